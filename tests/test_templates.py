"""Tests for CSV template derivation and rendering."""

from generapix.templates import (
    column_descriptions,
    headers_csv,
    render_template_csv,
    sample_row,
    split_columns,
    template_name,
)


def test_template_name_from_filename():
    """Separators become spaces and words are capitalised."""
    assert template_name("spring_promo-LIST.csv") == "Spring Promo List Template"
    assert template_name("catalog.xlsx") == "Catalog Template"


def test_first_four_columns_are_required():
    """Columns past the fourth are optional."""
    required, optional = split_columns(["A", "B", "C", "D", "E", "F"])
    assert required == ["A", "B", "C", "D"]
    assert optional == ["E", "F"]
    assert split_columns(["A", "B"]) == (["A", "B"], [])


def test_descriptions_and_examples_follow_column_names():
    """Known column names get tailored hints, anything else a generic one."""
    headers = ["Product Name", "Price", "Category", "Size", "Region", "Mood"]
    assert column_descriptions(headers) == {
        "Product Name": "Enter the product name",
        "Price": "Price or cost value",
        "Category": "Category or type classification",
        "Size": "Size or dimensional specification",
        "Region": "Enter region value",
        "Mood": "Enter mood value",
    }
    assert sample_row(headers) == {
        "Product Name": "Example Product Name",
        "Price": "19.99",
        "Category": "Category Name",
        "Size": "Medium",
        "Region": "US",
        "Mood": "Example Mood",
    }


def test_headers_csv_has_only_the_header_row():
    """The stored template file is the header line alone."""
    assert headers_csv(["Product", "Theme"]) == b"Product,Theme\n"


def test_render_template_csv_with_sample_row():
    """Descriptions go in comment lines above the header and example row."""
    columns = ["Product Name", "Price"]
    out = render_template_csv(columns, column_descriptions(columns), [sample_row(columns)])
    assert out.splitlines() == [
        "# Column descriptions:",
        '# "Enter the product name","Price or cost value"',
        "#",
        "Product Name,Price",
        "Example Product Name,19.99",
    ]


def test_render_template_csv_without_samples_writes_empty_row():
    """Missing descriptions fall back and an empty row is left to fill in."""
    out = render_template_csv(["A", "B"])
    assert out.splitlines() == [
        "# Column descriptions:",
        '# "Enter A value","Enter B value"',
        "#",
        "A,B",
        ",",
    ]
