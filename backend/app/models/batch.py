"""CsvBatch model: one bulk CSV submission and its progress counters.

Status lifecycle:
    uploaded → queued → processing → completed
                                   ↘ failed
                                   ↘ cancelled

Counters are written only by the batch worker, once per chunk, and always
satisfy ``processed_rows == successful_rows + failed_rows <= total_rows``.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base

BATCH_STATUS_UPLOADED = "uploaded"
BATCH_STATUS_QUEUED = "queued"
BATCH_STATUS_PROCESSING = "processing"
BATCH_STATUS_COMPLETED = "completed"
BATCH_STATUS_FAILED = "failed"
BATCH_STATUS_CANCELLED = "cancelled"

VALID_BATCH_STATUSES: list[str] = [
    BATCH_STATUS_UPLOADED,
    BATCH_STATUS_QUEUED,
    BATCH_STATUS_PROCESSING,
    BATCH_STATUS_COMPLETED,
    BATCH_STATUS_FAILED,
    BATCH_STATUS_CANCELLED,
]

TERMINAL_BATCH_STATUSES = frozenset(
    {BATCH_STATUS_COMPLETED, BATCH_STATUS_FAILED, BATCH_STATUS_CANCELLED}
)

DEPARTMENT_EMAIL_MARKETING = "email_marketing"
DEPARTMENT_GOOGLE_SEM = "google_sem"
DEPARTMENT_GROUPON = "groupon"

VALID_DEPARTMENTS: list[str] = [
    DEPARTMENT_EMAIL_MARKETING,
    DEPARTMENT_GOOGLE_SEM,
    DEPARTMENT_GROUPON,
]


def _new_id() -> str:
    return str(uuid.uuid4())


class CsvBatch(Base):
    __tablename__ = "csv_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # --- Ownership / source file ---
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    filename: Mapped[str] = mapped_column(String(255))
    original_filename: Mapped[str] = mapped_column(String(255), default="")
    file_size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    storage_bucket: Mapped[str | None] = mapped_column(String(64), default=None)
    storage_path: Mapped[str | None] = mapped_column(String(512), default=None)
    csv_headers: Mapped[list | None] = mapped_column(JSON, default=None)
    department: Mapped[str] = mapped_column(String(32))

    # --- Progress ---
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0)
    successful_rows: Mapped[int] = mapped_column(Integer, default=0)
    failed_rows: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(
        String(20), default=BATCH_STATUS_UPLOADED, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    # Set by the cancel endpoint, honoured by the worker between chunks
    cancel_requested: Mapped[bool] = mapped_column(default=False)

    # --- Single-owner lease (renewed on every chunk write) ---
    worker_id: Mapped[str | None] = mapped_column(String(64), default=None)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    # aspect ratio, batch size, submission time...
    batch_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    row_jobs: Mapped[list["CsvRowJob"]] = relationship(  # noqa: F821
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="CsvRowJob.row_number",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    @property
    def progress_percent(self) -> int:
        if not self.total_rows:
            return 0
        return int(self.processed_rows * 100 / self.total_rows)
