#!/usr/bin/env python3
# CLI entry point for GeneraPix
# Offline checks for bulk-upload spreadsheets before they are submitted

import argparse
import json
import sys
from pathlib import Path

from generapix.csv_loader import load_rows
from generapix.errors import RowValidationError
from generapix.rows import REQUIRED_COLUMNS, build_trigger_text, clean_row, missing_columns, validate_rows

MAX_ROWS = 50


def _load(path: Path) -> list[dict]:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return load_rows(path.read_bytes(), path.name)


def check_rows(rows: list[dict], max_rows: int = MAX_ROWS) -> list[str]:
    """Return every problem that would make the bulk endpoint reject ``rows``."""
    problems: list[str] = []
    if not rows:
        return ["File contains no data rows"]
    if len(rows) > max_rows:
        problems.append(f"File contains {len(rows)} rows. Maximum allowed is {max_rows} rows.")
    missing = missing_columns(rows)
    if missing:
        problems.append(
            f"Missing required columns: {', '.join(missing)}. Expected: {', '.join(REQUIRED_COLUMNS)}"
        )
    try:
        validate_rows(rows)
    except RowValidationError as exc:
        problems.append(str(exc))
    return problems


def cmd_validate(args: argparse.Namespace) -> int:
    rows = _load(Path(args.file))
    problems = check_rows(rows, max_rows=args.max_rows)
    if problems:
        for problem in problems:
            print(f"❌ {problem}")
        return 1
    print(f"✅ {args.file}: {len(rows)} rows, all required columns present")
    return 0


def cmd_preview(args: argparse.Namespace) -> int:
    rows = _load(Path(args.file))
    headers = list(rows[0].keys()) if rows else []
    for row_number, raw in enumerate(rows, start=1):
        cleaned = clean_row(raw, headers)
        print(json.dumps({"row": row_number, "trigger_text": build_trigger_text(cleaned)}, ensure_ascii=False))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="GeneraPix bulk CSV tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Check a CSV/XLSX file against the bulk upload rules")
    p_validate.add_argument("file", help="Path to the .csv/.xlsx file")
    p_validate.add_argument("--max-rows", type=int, default=MAX_ROWS, help="Row limit (default: 50)")
    p_validate.set_defaults(func=cmd_validate)

    p_preview = sub.add_parser("preview", help="Print the trigger text for every row as JSON lines")
    p_preview.add_argument("file", help="Path to the .csv/.xlsx file")
    p_preview.set_defaults(func=cmd_preview)

    args = parser.parse_args(argv)
    try:
        code = args.func(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"❌ {exc}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
