"""CSV templates: derive a template from uploaded headers and render it back.

A template is just an ordered header list plus helper text.  The first
``REQUIRED_COLUMN_COUNT`` headers are treated as required, the rest as
optional.  The downloadable file is a CSV with ``#`` comment lines holding
the column descriptions, followed by the header row and an example row.
"""

import io
import re
from collections.abc import Mapping, Sequence

import pandas as pd

REQUIRED_COLUMN_COUNT = 4
MIN_TEMPLATE_COLUMNS = 2

# (keywords, example value, description); first match wins
_COLUMN_HINTS: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (("name", "title"), "Example Product Name", "Enter the {lower}"),
    (("description",), "Product description goes here", "Detailed description or information"),
    (("price", "cost"), "19.99", "Price or cost value"),
    (("category", "type"), "Category Name", "Category or type classification"),
    (("size", "dimension"), "Medium", "Size or dimensional specification"),
    (("color",), "Blue", "Enter {lower} value"),
    (("country", "region"), "US", "Enter {lower} value"),
)


def _hint(header: str) -> tuple[str, str]:
    lower = header.lower()
    for keywords, example, description in _COLUMN_HINTS:
        if any(k in lower for k in keywords):
            return example, description.format(lower=lower)
    return f"Example {header}", f"Enter {lower} value"


def template_name(filename: str) -> str:
    """``"spring_promo-list.csv"`` → ``"Spring Promo List Template"``."""
    stem = re.sub(r"\.(csv|xlsx|xls)$", "", filename, flags=re.IGNORECASE)
    words = re.sub(r"[_-]", " ", stem).split()
    return " ".join(w.capitalize() for w in words) + " Template"


def split_columns(headers: Sequence[str]) -> tuple[list[str], list[str]]:
    """Return (required, optional) columns."""
    return list(headers[:REQUIRED_COLUMN_COUNT]), list(headers[REQUIRED_COLUMN_COUNT:])


def column_descriptions(headers: Sequence[str]) -> dict[str, str]:
    return {h: _hint(h)[1] for h in headers}


def sample_row(headers: Sequence[str]) -> dict[str, str]:
    """One placeholder row so users can see the expected value shapes."""
    return {h: _hint(h)[0] for h in headers}


def headers_csv(headers: Sequence[str]) -> bytes:
    """Header-only CSV stored as the template file."""
    return pd.DataFrame(columns=list(headers)).to_csv(index=False, lineterminator="\n").encode("utf-8")


def render_template_csv(
    columns: Sequence[str],
    descriptions: Mapping[str, str] | None = None,
    samples: Sequence[Mapping[str, str]] | None = None,
) -> str:
    """Render the downloadable template.

    With no sample rows a single empty row is written so the file opens
    with one line ready to fill in.
    """
    descriptions = descriptions or {}
    rows = [{c: (row.get(c) or "") for c in columns} for row in (samples or [])]
    if not rows:
        rows = [{c: "" for c in columns}]

    described = ",".join(
        '"' + (descriptions.get(c) or f"Enter {c} value").replace('"', '""') + '"' for c in columns
    )
    buf = io.StringIO()
    buf.write("# Column descriptions:\n")
    buf.write(f"# {described}\n")
    buf.write("#\n")
    pd.DataFrame(rows, columns=list(columns)).to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()
