"""CsvRowJob model: one spreadsheet row of a batch.

Created ``pending`` together with its batch; written once by the worker
when the row resolves to ``success`` or ``failed``.
"""

from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base

ROW_STATUS_PENDING = "pending"
ROW_STATUS_SUCCESS = "success"
ROW_STATUS_FAILED = "failed"

VALID_ROW_STATUSES: list[str] = [
    ROW_STATUS_PENDING,
    ROW_STATUS_SUCCESS,
    ROW_STATUS_FAILED,
]


class CsvRowJob(Base):
    __tablename__ = "csv_row_jobs"
    __table_args__ = (UniqueConstraint("batch_id", "row_number", name="uq_row_job_batch_row"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("csv_batches.id", ondelete="CASCADE"), index=True
    )
    # 1-based position in the uploaded file
    row_number: Mapped[int] = mapped_column(Integer)

    row_data: Mapped[dict] = mapped_column(JSON)
    trigger_text: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default=ROW_STATUS_PENDING, index=True)

    # --- Results ---
    generated_content: Mapped[str | None] = mapped_column(Text, default=None)
    image_prompt: Mapped[str | None] = mapped_column(Text, default=None)
    image_path: Mapped[str | None] = mapped_column(String(512), default=None)
    white_background_path: Mapped[str | None] = mapped_column(String(512), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    # thread id, assistant id, aspect ratio; original row values on failure
    result_metadata: Mapped[dict | None] = mapped_column(JSON, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    batch: Mapped["CsvBatch"] = relationship(back_populates="row_jobs")  # noqa: F821
