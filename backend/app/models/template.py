"""CsvTemplate model: a reusable spreadsheet layout users can download.

The header-only file lives in the ``csv-templates`` bucket; the column
split, descriptions and example row are kept here so the download can be
rendered without reading storage.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base

TEMPLATE_TYPE_CUSTOM = "custom"


class CsvTemplate(Base):
    __tablename__ = "csv_templates"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    template_type: Mapped[str] = mapped_column(String(20), default=TEMPLATE_TYPE_CUSTOM)

    required_columns: Mapped[list] = mapped_column(JSON, default=list)
    optional_columns: Mapped[list] = mapped_column(JSON, default=list)
    column_descriptions: Mapped[dict | None] = mapped_column(JSON, default=None)
    sample_data: Mapped[list | None] = mapped_column(JSON, default=None)

    storage_bucket: Mapped[str] = mapped_column(String(64))
    storage_path: Mapped[str] = mapped_column(String(512))
    file_size_bytes: Mapped[int] = mapped_column(Integer, default=0)

    download_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    @property
    def columns(self) -> list[str]:
        return list(self.required_columns or []) + list(self.optional_columns or [])
