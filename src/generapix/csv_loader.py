"""Spreadsheet loader for bulk uploads.

Parses CSV and Excel payloads into the flat row mappings used by the bulk
pipeline, and serialises cleaned rows back to CSV for the stored backup.
"""

import io
import zipfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pandas as pd

CSV_EXTENSIONS = {".csv"}
EXCEL_EXTENSIONS = {".xlsx", ".xls"}
SUPPORTED_EXTENSIONS = CSV_EXTENSIONS | EXCEL_EXTENSIONS


def load_rows(data: bytes, filename: str) -> list[dict[str, Any]]:
    """Parse a CSV/Excel payload into a list of ``{header: value}`` dicts.

    Args:
        data: Raw file bytes.
        filename: Original filename; only the extension is used.

    Returns:
        Rows in file order.  Fully-empty rows are dropped and NaN cells are
        converted to None.

    Raises:
        ValueError: If the extension is unsupported or the payload cannot be parsed.
    """
    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type: {ext or filename}. "
            f"Expected one of: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    try:
        if ext in CSV_EXTENSIONS:
            df = pd.read_csv(
                io.BytesIO(data),
                dtype=str,
                keep_default_na=False,
                na_values=[""],
                skip_blank_lines=True,
            )
        else:
            engine = "openpyxl" if ext == ".xlsx" else None
            df = pd.read_excel(io.BytesIO(data), sheet_name=0, dtype=str, engine=engine)
    except (ValueError, zipfile.BadZipFile) as exc:
        raise ValueError(f"Could not parse {filename}: {exc}") from exc

    df = df.dropna(how="all")
    df.columns = [str(c).strip() for c in df.columns]

    # Convert NaN to None for JSON compatibility
    return [
        {k: (None if pd.isna(v) else v) for k, v in row.items()}
        for row in df.to_dict(orient="records")
    ]


def read_headers(data: bytes, filename: str) -> list[str]:
    """Return the non-blank column headers of a CSV/Excel payload.

    Only the header row is parsed, so header-only template files work.

    Raises:
        ValueError: If the extension is unsupported or the payload cannot be parsed.
    """
    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type: {ext or filename}. "
            f"Expected one of: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    try:
        if ext in CSV_EXTENSIONS:
            df = pd.read_csv(io.BytesIO(data), dtype=str, nrows=0)
        else:
            engine = "openpyxl" if ext == ".xlsx" else None
            df = pd.read_excel(io.BytesIO(data), sheet_name=0, dtype=str, nrows=0, engine=engine)
    except pd.errors.EmptyDataError:
        return []
    except (ValueError, zipfile.BadZipFile) as exc:
        raise ValueError(f"Could not parse {filename}: {exc}") from exc

    headers = [str(c).strip() for c in df.columns]
    # pandas names blank header cells "Unnamed: <n>"
    return [h for h in headers if h and not h.startswith("Unnamed:")]


def _csv_cell(value: Any) -> str:
    if value is None:
        return "NULL"
    return '"' + str(value).replace('"', '""') + '"'


def to_csv_bytes(rows: Sequence[Mapping[str, Any]], headers: Sequence[str]) -> bytes:
    """Serialise cleaned rows as CSV; ``None`` is written as a bare ``NULL``."""
    lines = [",".join(headers)]
    for row in rows:
        lines.append(",".join(_csv_cell(row.get(h)) for h in headers))
    return "\n".join(lines).encode("utf-8")
