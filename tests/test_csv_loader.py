"""Tests for spreadsheet loading and CSV backup serialisation."""

import io

import pandas as pd
import pytest

from generapix.csv_loader import load_rows, read_headers, to_csv_bytes


def test_load_csv_rows_with_blanks_as_none():
    """Empty CSV cells come back as None; values stay strings."""
    data = b"Product,Variant,Size,Region,Theme\nMug,,12,US,Autumn\nCup,Red,8,EU,\n"
    rows = load_rows(data, "upload.csv")
    assert rows == [
        {"Product": "Mug", "Variant": None, "Size": "12", "Region": "US", "Theme": "Autumn"},
        {"Product": "Cup", "Variant": "Red", "Size": "8", "Region": "EU", "Theme": None},
    ]


def test_load_csv_keeps_na_strings():
    """Literal 'NA' is a value, not a missing cell."""
    rows = load_rows(b"Product,Region\nMug,NA\n", "x.csv")
    assert rows[0]["Region"] == "NA"


def test_load_csv_strips_header_whitespace_and_blank_rows():
    """Header names are trimmed and fully-empty rows dropped."""
    rows = load_rows(b" Product , Theme \nMug,Autumn\n,\n", "x.csv")
    assert rows == [{"Product": "Mug", "Theme": "Autumn"}]


def test_load_xlsx_rows():
    """An .xlsx payload is parsed with openpyxl."""
    buf = io.BytesIO()
    pd.DataFrame([{"Product": "Mug", "Theme": "Autumn"}]).to_excel(buf, index=False, engine="openpyxl")
    rows = load_rows(buf.getvalue(), "sheet.xlsx")
    assert rows == [{"Product": "Mug", "Theme": "Autumn"}]


def test_unsupported_extension_raises():
    """Only CSV and Excel files are accepted."""
    with pytest.raises(ValueError, match="Unsupported file type"):
        load_rows(b"data", "notes.txt")


def test_corrupt_xlsx_raises_value_error():
    """A payload that is not a workbook surfaces as ValueError."""
    with pytest.raises(ValueError):
        load_rows(b"not a zip file", "broken.xlsx")


def test_to_csv_bytes_quotes_values_and_writes_null():
    """None becomes a bare NULL, other values are quoted with quotes doubled."""
    rows = [{"Product": 'Mug "XL"', "Theme": None}]
    out = to_csv_bytes(rows, ["Product", "Theme"]).decode("utf-8")
    assert out == 'Product,Theme\n"Mug ""XL""",NULL'


def test_read_headers_from_header_only_csv():
    """Headers are read even when the file has no data rows; blank headers are skipped."""
    assert read_headers(b" Product ,,Theme\n", "template.csv") == ["Product", "Theme"]


def test_read_headers_from_xlsx():
    """Only the first sheet's header row is used."""
    buf = io.BytesIO()
    pd.DataFrame([{"Name": "Mug", "Price": "9"}]).to_excel(buf, index=False, engine="openpyxl")
    assert read_headers(buf.getvalue(), "template.xlsx") == ["Name", "Price"]


def test_read_headers_of_empty_file_is_empty():
    """An empty CSV has no headers rather than raising."""
    assert read_headers(b"", "empty.csv") == []


def test_read_headers_rejects_unsupported_extension():
    """Only CSV and Excel files are accepted."""
    with pytest.raises(ValueError, match="Unsupported file type"):
        read_headers(b"a,b", "notes.txt")
