"""Bulk submission intake shared by the JSON and file-upload endpoints.

``validate_submission`` applies the acceptance rules in a fixed order and
raises ``IntakeError`` (status 400) before anything is written.
``persist_submission`` stores the CSV backup and creates the batch with its
row jobs; storage/database failures surface as ``IntakeError`` (status 500).
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.batch import VALID_DEPARTMENTS, CsvBatch
from app.services.batch_service import BatchService
from app.services.storage import BUCKET_CSV_UPLOADS, StorageService
from generapix.csv_loader import to_csv_bytes
from generapix.errors import RowValidationError
from generapix.image_generator import SUPPORTED_ASPECT_RATIOS
from generapix.rows import REQUIRED_COLUMNS, clean_row, missing_columns, validate_rows

logger = logging.getLogger(__name__)

_batch_service = BatchService()

# The user id becomes a storage path segment
_UNSAFE_USER_ID = re.compile(r"[/\\\x00-\x1f]|\.\.")


class IntakeError(Exception):
    """A submission was rejected; ``status_code`` is the HTTP status to return."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def check_user_id(user_id: Any) -> str:
    """Return the trimmed user id, rejecting blanks and anything unsafe as a path segment."""
    if not isinstance(user_id, (str, int)) or not str(user_id).strip():
        raise IntakeError("User ID is required")
    user_id = str(user_id).strip()
    if _UNSAFE_USER_ID.search(user_id):
        raise IntakeError("Invalid userId: must not contain path separators or '..'")
    return user_id


@dataclass
class Submission:
    """A validated, cleaned bulk submission ready to persist."""

    rows: list[dict[str, str | None]]
    headers: list[str]
    user_id: str
    department: str
    aspect_ratio: str
    batch_size: int
    batch_id: str | None = None


def validate_submission(
    csv_data: Any,
    *,
    department: Any,
    user_id: Any,
    aspect_ratio: Any = "1:1",
    batch_size: Any = None,
    max_rows: int | None = None,
    job_id: Any = None,
) -> Submission:
    """Check a submission in acceptance order and return it cleaned.

    Order: rows present, row limit, required columns, department, user id,
    row schema, batch size, aspect ratio, job id.
    """
    max_rows = max_rows or settings.bulk_max_rows

    if not isinstance(csv_data, list) or not csv_data:
        raise IntakeError("CSV data is required and must be a non-empty array")
    if len(csv_data) > max_rows:
        raise IntakeError(
            f"CSV file contains {len(csv_data)} rows. Maximum allowed is {max_rows} rows. "
            "Please reduce the file size and try again."
        )
    if not isinstance(csv_data[0], dict):
        raise IntakeError("Row 1: row must be an object of column -> value")

    missing = missing_columns(csv_data)
    if missing:
        raise IntakeError(
            f"Missing required columns: {', '.join(missing)}. "
            f"Expected: {', '.join(REQUIRED_COLUMNS)}"
        )
    if department not in VALID_DEPARTMENTS:
        raise IntakeError(
            f"Invalid department: {department}. Expected one of: {', '.join(VALID_DEPARTMENTS)}"
        )
    user_id = check_user_id(user_id)

    try:
        validate_rows(csv_data)
    except RowValidationError as exc:
        raise IntakeError(str(exc)) from exc

    if batch_size is None:
        batch_size = settings.bulk_default_batch_size
    # Rows of a chunk run concurrently; the cap bounds simultaneous vendor calls
    if (
        isinstance(batch_size, bool)
        or not isinstance(batch_size, int)
        or not 1 <= batch_size <= settings.bulk_max_batch_size
    ):
        raise IntakeError(
            f"Invalid batchSize: {batch_size}. Expected an integer between 1 and "
            f"{settings.bulk_max_batch_size}"
        )
    aspect_ratio = aspect_ratio or "1:1"
    if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise IntakeError(
            f"Invalid aspectRatio: {aspect_ratio}. Expected one of: {', '.join(SUPPORTED_ASPECT_RATIOS)}"
        )
    if job_id is not None:
        try:
            job_id = str(uuid.UUID(str(job_id)))
        except ValueError:
            raise IntakeError(f"Invalid jobId: {job_id}. Expected a UUID") from None

    headers = list(csv_data[0].keys())
    rows = [clean_row(raw, headers) for raw in csv_data]
    return Submission(
        rows=rows,
        headers=headers,
        user_id=user_id,
        department=department,
        aspect_ratio=aspect_ratio,
        batch_size=batch_size,
        batch_id=job_id,
    )


def estimated_minutes(total_rows: int) -> int:
    """Rough completion estimate (45 seconds per row)."""
    return math.ceil(total_rows * settings.bulk_seconds_per_row_estimate / 60)


def persist_submission(
    db: Session,
    storage: StorageService,
    submission: Submission,
    *,
    original_filename: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> CsvBatch:
    """Store the CSV backup, then create the batch and its row jobs.

    Raises:
        IntakeError: (409) when a caller-supplied job id is already taken;
            (500) when storage or the database rejects the write.
    """
    if submission.batch_id and _batch_service.get(db, submission.batch_id) is not None:
        raise IntakeError(f"Batch {submission.batch_id} already exists", status_code=409)

    now = datetime.now(timezone.utc)
    timestamp = now.isoformat().replace(":", "-").replace(".", "-")
    path = f"{submission.user_id}/bulk_{timestamp}.csv"
    content = to_csv_bytes(submission.rows, submission.headers)

    try:
        storage.store_file(BUCKET_CSV_UPLOADS, path, content, overwrite=False)
    except OSError:
        logger.exception("Failed to store CSV backup %s", path)
        raise IntakeError("Failed to store CSV file for processing", status_code=500) from None

    metadata = {
        "aspectRatio": submission.aspect_ratio,
        "batchSize": submission.batch_size,
        "submittedAt": now.isoformat(),
        **(extra_metadata or {}),
    }
    try:
        batch = _batch_service.create_batch(
            db,
            user_id=submission.user_id,
            department=submission.department,
            rows=submission.rows,
            headers=submission.headers,
            filename=path,
            original_filename=original_filename or f"bulk_{int(now.timestamp() * 1000)}.csv",
            file_size_bytes=len(content),
            storage_bucket=BUCKET_CSV_UPLOADS,
            storage_path=path,
            metadata=metadata,
            batch_id=submission.batch_id,
        )
    except SQLAlchemyError:
        logger.exception("Failed to insert CSV batch for user %s", submission.user_id)
        storage.delete(BUCKET_CSV_UPLOADS, path)
        raise IntakeError("Failed to store CSV batch for processing", status_code=500) from None
    return batch

