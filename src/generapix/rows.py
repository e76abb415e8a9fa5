"""Row schema and trigger-text translation for bulk CSV uploads.

A bulk upload is a list of flat ``{header: value}`` mappings.  Each row is
cleaned (blank -> ``None``), validated against ``CsvRow`` and turned into a
single-line trigger prompt for the assistant.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from generapix.errors import RowValidationError

REQUIRED_COLUMNS: tuple[str, ...] = ("Product", "Variant", "Size", "Region", "Theme")
ADDITIONAL_COMMENTS_COLUMN = "additional comments"

# (column header, label used in the trigger text), in prompt order
TRIGGER_FIELDS: tuple[tuple[str, str], ...] = (
    ("Product", "Product"),
    ("Variant", "Variant"),
    ("Size", "Size"),
    ("Region", "Region"),
    ("Theme", "Theme"),
    (ADDITIONAL_COMMENTS_COLUMN, "Additional"),
)

_SCALAR_TYPES = (str, int, float, bool)


class CsvRow(BaseModel):
    """One validated CSV row.

    Named fields are populated from the CSV headers; any other column is
    kept as an extra attribute so it survives into ``row_data``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    product: str | None = Field(default=None, alias="Product")
    variant: str | None = Field(default=None, alias="Variant")
    size: str | None = Field(default=None, alias="Size")
    region: str | None = Field(default=None, alias="Region")
    theme: str | None = Field(default=None, alias="Theme")
    additional_comments: str | None = Field(default=None, alias=ADDITIONAL_COMMENTS_COLUMN)

    @model_validator(mode="before")
    @classmethod
    def _scalars_only(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            raise ValueError("row must be an object of column -> value")
        for key, value in data.items():
            if not isinstance(key, str):
                raise ValueError(f"column name {key!r} is not a string")
            if value is not None and not isinstance(value, _SCALAR_TYPES):
                raise ValueError(f"column {key!r} holds a non-scalar value")
        return {k: (None if v is None else str(v)) for k, v in data.items()}

    def as_mapping(self) -> dict[str, str | None]:
        """Return the row keyed by the original CSV headers."""
        return self.model_dump(by_alias=True)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN from pandas
        return True
    return isinstance(value, str) and not value.strip()


def clean_row(raw: Mapping[str, Any], headers: Sequence[str]) -> dict[str, str | None]:
    """Normalise one row: blank values become ``None``, everything else a trimmed string."""
    cleaned: dict[str, str | None] = {}
    for header in headers:
        value = raw.get(header)
        cleaned[header] = None if _is_blank(value) else str(value).strip()
    return cleaned


def missing_columns(rows: Sequence[Mapping[str, Any]]) -> list[str]:
    """Required columns absent from the first row's headers, in required order."""
    headers = set(rows[0].keys()) if rows else set()
    return [column for column in REQUIRED_COLUMNS if column not in headers]


def parse_row(raw: Mapping[str, Any], row_number: int) -> CsvRow:
    """Validate one row, raising ``RowValidationError`` on a schema mismatch."""
    try:
        return CsvRow.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise RowValidationError(row_number, first.get("msg", "invalid row")) from exc


def validate_rows(rows: Sequence[Mapping[str, Any]]) -> list[CsvRow]:
    """Validate every row; row numbers in errors are 1-based."""
    return [parse_row(raw, index) for index, raw in enumerate(rows, start=1)]


def build_trigger_text(row: Mapping[str, Any] | CsvRow) -> str:
    """Render ``"Label: value"`` fragments for the non-blank trigger fields.

    >>> build_trigger_text({"Product": "Mug", "Variant": " ", "Size": "12oz"})
    'Product: Mug, Size: 12oz'
    """
    values = row.as_mapping() if isinstance(row, CsvRow) else row
    fragments = []
    for column, label in TRIGGER_FIELDS:
        value = values.get(column)
        if _is_blank(value):
            continue
        fragments.append(f"{label}: {str(value).strip()}")
    return ", ".join(fragments)
