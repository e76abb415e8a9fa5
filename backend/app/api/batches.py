"""Batches API — progress polling, history and control for bulk CSV batches.

Implements:
  GET    /api/batches                 — list a user's batches (paginated)
  GET    /api/batches/{batch_id}      — poll progress of one batch
  GET    /api/batches/{batch_id}/rows — per-row results
  POST   /api/batches/{batch_id}/cancel — stop before the next chunk
  POST   /api/batches/{batch_id}/resume — restart an orphaned batch
  DELETE /api/batches/{batch_id}      — delete a finished batch and its files
"""

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel

from app.database import get_db
from app.models.batch import (
    BATCH_STATUS_PROCESSING,
    BATCH_STATUS_QUEUED,
    CsvBatch,
)
from app.models.row_job import CsvRowJob
from app.services.batch_service import BatchService
from app.services.batch_worker import is_running, start_batch
from app.services.storage import BUCKET_CSV_UPLOADS, BUCKET_GENERATED_IMAGES, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/batches", tags=["batches"])
_batch_service = BatchService()


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class BatchResponse(BaseModel):
    """Public representation of a CsvBatch record."""

    id: str
    user_id: str
    department: str
    filename: str
    original_filename: str
    status: str
    total_rows: int
    processed_rows: int
    successful_rows: int
    failed_rows: int
    progress_percent: int
    error_message: str | None
    metadata: dict | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class BatchListResponse(BaseModel):
    """Paginated list of batches."""

    batches: list[BatchResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class RowJobResponse(BaseModel):
    row_number: int
    status: str
    trigger_text: str
    row_data: dict
    generated_content: str | None
    image_url: str | None
    white_background_url: str | None
    error_message: str | None
    retry_count: int
    metadata: dict | None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _batch_to_response(batch: CsvBatch) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        user_id=batch.user_id,
        department=batch.department,
        filename=batch.filename,
        original_filename=batch.original_filename,
        status=batch.status,
        total_rows=batch.total_rows,
        processed_rows=batch.processed_rows,
        successful_rows=batch.successful_rows,
        failed_rows=batch.failed_rows,
        progress_percent=batch.progress_percent,
        error_message=batch.error_message,
        metadata=batch.batch_metadata,
        created_at=batch.created_at,
        updated_at=batch.updated_at,
        started_at=batch.started_at,
        completed_at=batch.completed_at,
    )


def _row_to_response(job: CsvRowJob) -> RowJobResponse:
    return RowJobResponse(
        row_number=job.row_number,
        status=job.status,
        trigger_text=job.trigger_text,
        row_data=job.row_data or {},
        generated_content=job.generated_content,
        image_url=job.image_path,
        white_background_url=job.white_background_path,
        error_message=job.error_message,
        retry_count=job.retry_count,
        metadata=job.result_metadata,
    )


def _load_batch(batch_id: str) -> BatchResponse:
    db = get_db()
    try:
        batch = _batch_service.get(db, batch_id)
        if not batch:
            raise HTTPException(status_code=404, detail="Batch not found")
        return _batch_to_response(batch)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=BatchListResponse)
def list_batches(
    user_id: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> BatchListResponse:
    """Return a paginated list of a user's batches, newest first."""
    db = get_db()
    try:
        batches, total = _batch_service.list_for_user(db, user_id, page=page, page_size=page_size)
        items = [_batch_to_response(b) for b in batches]
    finally:
        db.close()

    total_pages = max(1, (total + page_size - 1) // page_size)
    return BatchListResponse(
        batches=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.get("/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str) -> BatchResponse:
    """Return counters and status of a single batch."""
    return _load_batch(batch_id)


@router.get("/{batch_id}/rows", response_model=list[RowJobResponse])
def get_batch_rows(batch_id: str) -> list[RowJobResponse]:
    """Return every row job of a batch in file order."""
    db = get_db()
    try:
        if not _batch_service.get(db, batch_id):
            raise HTTPException(status_code=404, detail="Batch not found")
        return [_row_to_response(job) for job in _batch_service.list_row_jobs(db, batch_id)]
    finally:
        db.close()


@router.post("/{batch_id}/cancel", response_model=BatchResponse)
def cancel_batch(batch_id: str) -> BatchResponse:
    """Cancel a queued batch, or ask a running one to stop before its next chunk.

    Rows already issued in the current chunk still run to completion.
    Returns 409 for batches that already finished.
    """
    db = get_db()
    try:
        batch = _batch_service.get(db, batch_id)
        if not batch:
            raise HTTPException(status_code=404, detail="Batch not found")
        if batch.is_terminal:
            raise HTTPException(
                status_code=409,
                detail=f"Batch is already {batch.status} and cannot be cancelled",
            )
        batch = _batch_service.request_cancel(db, batch_id)
        logger.info("Cancellation requested for batch %s", batch_id)
        return _batch_to_response(batch)
    finally:
        db.close()


@router.post("/{batch_id}/resume", response_model=BatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def resume_batch(batch_id: str) -> BatchResponse:
    """Restart a queued batch or a processing batch whose worker has died.

    Rows already persisted are skipped.  Returns 409 when the batch is
    finished, or when a worker here or in another process still holds its
    lease.
    """
    db = get_db()
    try:
        record = _batch_service.get(db, batch_id)
        if not record:
            raise HTTPException(status_code=404, detail="Batch not found")
        batch = _batch_to_response(record)
        lease_held = _batch_service.has_live_lease(record)
    finally:
        db.close()

    if batch.status not in (BATCH_STATUS_QUEUED, BATCH_STATUS_PROCESSING):
        raise HTTPException(
            status_code=409,
            detail=f"Batch is {batch.status}; only queued or processing batches can be resumed",
        )
    if lease_held or is_running(batch_id) or not start_batch(batch_id):
        raise HTTPException(status_code=409, detail="Batch is already being processed")
    logger.info("Resume scheduled for batch %s", batch_id)
    return batch


@router.delete(
    "/{batch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a finished batch",
    description=(
        "Permanently deletes a batch, its row jobs, its library images and its "
        "stored files. Only **completed**, **failed** or **cancelled** batches "
        "may be deleted; active batches are rejected to avoid orphaning workers."
    ),
)
def delete_batch(batch_id: str) -> Response:
    """Delete a finished batch.

    Returns 204 on success, 404 if the batch does not exist and 409 if it
    is still queued or processing.
    """
    db = get_db()
    try:
        batch = _batch_service.get(db, batch_id)
        if not batch:
            raise HTTPException(status_code=404, detail="Batch not found")
        if not batch.is_terminal:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot delete a batch in '{batch.status}' status",
            )
        storage_path = batch.storage_path
        _batch_service.delete_batch(db, batch)
    finally:
        db.close()

    # Storage cleanup is best-effort; the records are already gone
    storage = get_storage()
    try:
        storage.delete_prefix(BUCKET_GENERATED_IMAGES, f"bulk/{batch_id}")
        if storage_path:
            storage.delete(BUCKET_CSV_UPLOADS, storage_path)
    except OSError:
        logger.warning("Could not delete stored files for batch %s", batch_id, exc_info=True)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
