"""CSV upload API — multipart variant of the bulk endpoint.

POST /api/csv/upload accepts a .csv/.xlsx/.xls file plus form fields, parses
it server-side and then follows the same intake path as
POST /bulk-csv-process.
"""

import logging
from pathlib import Path

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from app.api.bulk import BulkMetadata, BulkSubmittedResponse, intake_to_http
from app.config import settings
from app.database import get_db
from app.services.batch_worker import start_batch
from app.services.bulk_intake import (
    IntakeError,
    estimated_minutes,
    persist_submission,
    validate_submission,
)
from app.services.storage import get_storage
from generapix.csv_loader import SUPPORTED_EXTENSIONS, load_rows

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/csv", tags=["csv"])

_MIN_COLUMNS = 2


@router.post(
    "/upload",
    response_model=BulkSubmittedResponse,
    summary="Upload a CSV or Excel file for bulk generation",
    description=(
        "Upload a spreadsheet (max 10 MB, max 50 rows) with at least the "
        "Product, Variant, Size, Region and Theme columns. Returns a `jobId` "
        "for polling via GET /api/batches/{jobId}."
    ),
)
async def upload_csv(
    file: UploadFile = File(..., description="CSV or Excel file"),
    user_id: str = Form(default=""),
    department: str = Form(default=""),
    aspect_ratio: str = Form(default="1:1"),
    batch_size: int | None = Form(default=None),
) -> BulkSubmittedResponse:
    """Parse an uploaded spreadsheet and queue it as a batch."""
    filename = file.filename or "upload.csv"
    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(400, "Invalid file type. Please upload CSV or Excel files only.")

    content = await file.read()
    if not content:
        raise HTTPException(400, "Uploaded file is empty.")
    if len(content) > settings.csv_max_file_bytes:
        raise HTTPException(
            400,
            f"File is too large. Maximum size is {settings.csv_max_file_bytes // 1024 // 1024} MB.",
        )

    try:
        rows = load_rows(content, filename)
    except ValueError as exc:
        logger.info("Could not parse upload %s: %s", filename, exc)
        raise HTTPException(400, f"Could not parse file: {exc}") from exc

    if rows and len(rows[0]) < _MIN_COLUMNS:
        raise HTTPException(400, f"File must have at least {_MIN_COLUMNS} columns.")

    try:
        submission = validate_submission(
            rows,
            department=department,
            user_id=user_id,
            aspect_ratio=aspect_ratio,
            batch_size=batch_size,
        )
    except IntakeError as exc:
        raise intake_to_http(exc) from exc

    db = get_db()
    try:
        batch = persist_submission(
            db,
            get_storage(),
            submission,
            original_filename=filename,
            extra_metadata={"source": "upload"},
        )
        batch_id = batch.id
        total = batch.total_rows
        meta = dict(batch.batch_metadata or {})
    except IntakeError as exc:
        raise intake_to_http(exc) from exc
    finally:
        db.close()

    logger.info("Uploaded %s → batch %s (%d rows)", filename, batch_id, total)
    start_batch(batch_id)

    return BulkSubmittedResponse(
        jobId=batch_id,
        estimatedTimeMinutes=estimated_minutes(total),
        metadata=BulkMetadata(
            totalRows=total,
            rowJobsCreated=total,
            aspectRatio=meta["aspectRatio"],
            batchSize=meta["batchSize"],
            submittedAt=meta["submittedAt"],
        ),
    )
