"""Bulk CSV API — accepts a parsed CSV and queues it for background generation.

POST /bulk-csv-process      — JSON rows → batch + row jobs, processed out-of-band
POST /api/bulk-csv-process  — same handler under the /api prefix

The endpoint returns a ``jobId`` immediately.  Clients poll
GET /api/batches/{jobId} for progress.
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.database import get_db
from app.services.batch_worker import start_batch
from app.services.bulk_intake import (
    IntakeError,
    estimated_minutes,
    persist_submission,
    validate_submission,
)
from app.services.storage import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bulk"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class BulkCsvRequest(BaseModel):
    """Body of POST /bulk-csv-process.

    Fields are loosely typed on purpose: every rule is checked by
    ``validate_submission`` so violations come back as 400 with a readable
    message instead of a 422 schema dump.
    """

    csv_data: Any = Field(default=None, alias="csvData")
    department: Any = None
    aspect_ratio: Any = Field(default="1:1", alias="aspectRatio")
    batch_size: Any = Field(default=None, alias="batchSize")
    user_id: Any = Field(default=None, alias="userId")
    job_id: Any = Field(default=None, alias="jobId")


class BulkMetadata(BaseModel):
    totalRows: int
    rowJobsCreated: int
    aspectRatio: str
    batchSize: int
    submittedAt: datetime


class BulkSubmittedResponse(BaseModel):
    """Returned immediately when a batch is accepted for processing."""

    success: bool = True
    message: str = "Bulk processing job created successfully"
    jobId: str
    status: str = "queued"
    estimatedTimeMinutes: int
    metadata: BulkMetadata


def intake_to_http(exc: IntakeError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.post("/bulk-csv-process", response_model=BulkSubmittedResponse)
@router.post("/api/bulk-csv-process", response_model=BulkSubmittedResponse)
async def bulk_csv_process(body: BulkCsvRequest) -> BulkSubmittedResponse:
    """Validate the rows, persist batch + row jobs and start processing.

    Returns 400 for validation failures (nothing is written), 500 when the
    CSV backup or the batch cannot be stored.
    """
    try:
        submission = validate_submission(
            body.csv_data,
            department=body.department,
            user_id=body.user_id,
            aspect_ratio=body.aspect_ratio,
            batch_size=body.batch_size,
            job_id=body.job_id,
        )
    except IntakeError as exc:
        logger.info("Rejected bulk submission: %s", exc.message)
        raise intake_to_http(exc) from exc

    logger.info(
        "Bulk submission: %d rows, department=%s, user=%s",
        len(submission.rows),
        submission.department,
        submission.user_id,
    )

    db = get_db()
    try:
        batch = persist_submission(db, get_storage(), submission)
        batch_id = batch.id
        row_jobs = batch.total_rows
        meta = dict(batch.batch_metadata or {})
    except IntakeError as exc:
        raise intake_to_http(exc) from exc
    finally:
        db.close()

    # Queue the row processing in the background
    start_batch(batch_id)

    return BulkSubmittedResponse(
        jobId=batch_id,
        estimatedTimeMinutes=estimated_minutes(row_jobs),
        metadata=BulkMetadata(
            totalRows=row_jobs,
            rowJobsCreated=row_jobs,
            aspectRatio=meta.get("aspectRatio", submission.aspect_ratio),
            batchSize=meta.get("batchSize", submission.batch_size),
            submittedAt=meta.get("submittedAt"),
        ),
    )
