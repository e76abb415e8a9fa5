"""GeneratedImage model: the library of every stored image.

Rows are written once per successful generation and never updated; an
edit produces a new row.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base

SOURCE_MANUAL = "manual"
SOURCE_BATCH = "batch"
SOURCE_EDITOR = "editor"

VALID_GENERATION_SOURCES: list[str] = [SOURCE_MANUAL, SOURCE_BATCH, SOURCE_EDITOR]


class GeneratedImage(Base):
    __tablename__ = "images"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    # Stable URL path served by /api/files
    storage_url: Mapped[str] = mapped_column(String(512), unique=True)
    prompt: Mapped[str | None] = mapped_column(Text, default=None)
    model: Mapped[str] = mapped_column(String(100), default="")
    generation_source: Mapped[str] = mapped_column(String(20), default=SOURCE_MANUAL, index=True)
    generation_metadata: Mapped[dict | None] = mapped_column(JSON, default=None)
    batch_id: Mapped[str | None] = mapped_column(
        ForeignKey("csv_batches.id", ondelete="SET NULL"), default=None, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
