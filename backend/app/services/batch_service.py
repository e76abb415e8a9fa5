"""Batch service — creates, claims, updates and queries CSV batches.

Keeps DB operations isolated from the API layer and the worker so the
logic is easily testable and reusable.

Ownership: a batch is processed by exactly one worker at a time.  The
worker claims it with a conditional UPDATE that also sets a lease; every
chunk write renews the lease and refuses to write when another worker has
taken the batch over.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.batch import (
    BATCH_STATUS_CANCELLED,
    BATCH_STATUS_COMPLETED,
    BATCH_STATUS_FAILED,
    BATCH_STATUS_PROCESSING,
    BATCH_STATUS_QUEUED,
    BATCH_STATUS_UPLOADED,
    CsvBatch,
)
from app.models.image import SOURCE_BATCH, GeneratedImage
from app.models.row_job import (
    ROW_STATUS_FAILED,
    ROW_STATUS_PENDING,
    ROW_STATUS_SUCCESS,
    CsvRowJob,
)
from app.services.row_pipeline import RowOutcome
from generapix.rows import build_trigger_text

logger = logging.getLogger(__name__)


class LeaseLostError(RuntimeError):
    """The batch is no longer owned by the worker trying to write to it."""


def _utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BatchService:
    """CRUD operations and lifecycle helpers for CsvBatch / CsvRowJob records."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_batch(
        self,
        db: Session,
        *,
        user_id: str,
        department: str,
        rows: Sequence[Mapping[str, Any]],
        headers: Sequence[str],
        filename: str,
        original_filename: str = "",
        file_size_bytes: int = 0,
        storage_bucket: str | None = None,
        storage_path: str | None = None,
        metadata: dict[str, Any] | None = None,
        batch_id: str | None = None,
    ) -> CsvBatch:
        """Create a batch and one pending row job per row, then queue it.

        Everything is written in a single transaction: either the batch and
        all its row jobs exist, or nothing does.
        """
        batch = CsvBatch(
            user_id=user_id,
            department=department,
            filename=filename,
            original_filename=original_filename,
            file_size_bytes=file_size_bytes,
            storage_bucket=storage_bucket,
            storage_path=storage_path,
            csv_headers=list(headers),
            total_rows=len(rows),
            processed_rows=0,
            successful_rows=0,
            failed_rows=0,
            status=BATCH_STATUS_UPLOADED,
            batch_metadata=metadata or {},
        )
        if batch_id:
            batch.id = batch_id

        try:
            db.add(batch)
            db.flush()
            for row_number, row in enumerate(rows, start=1):
                db.add(
                    CsvRowJob(
                        batch_id=batch.id,
                        row_number=row_number,
                        status=ROW_STATUS_PENDING,
                        row_data=dict(row),
                        trigger_text=build_trigger_text(row),
                        retry_count=0,
                    )
                )
            batch.status = BATCH_STATUS_QUEUED
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        db.refresh(batch)
        logger.info(
            "Created batch %s with %d row jobs for user %s",
            batch.id,
            batch.total_rows,
            user_id,
            extra={"batch_id": batch.id, "total_rows": batch.total_rows},
        )
        return batch

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def claim_batch(
        self,
        db: Session,
        batch_id: str,
        worker_id: str,
        *,
        lease_seconds: int,
    ) -> CsvBatch | None:
        """Take ownership of a batch; returns None when someone else holds it.

        A ``queued`` batch can always be claimed.  A ``processing`` batch can
        only be claimed once its previous owner's lease has expired, which
        is how a batch orphaned by a crashed process gets resumed.
        """
        now = _utcnow()
        result = db.execute(
            update(CsvBatch)
            .where(
                CsvBatch.id == batch_id,
                or_(
                    CsvBatch.status == BATCH_STATUS_QUEUED,
                    and_(
                        CsvBatch.status == BATCH_STATUS_PROCESSING,
                        or_(
                            CsvBatch.lease_expires_at.is_(None),
                            CsvBatch.lease_expires_at < now,
                        ),
                    ),
                ),
            )
            .values(
                status=BATCH_STATUS_PROCESSING,
                worker_id=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                started_at=func.coalesce(CsvBatch.started_at, now),
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            logger.info("Batch %s not claimable by worker %s", batch_id, worker_id)
            return None
        batch = self.get(db, batch_id)
        if batch is not None:
            db.refresh(batch)
        logger.info("Worker %s claimed batch %s", worker_id, batch_id)
        return batch

    def _owned(self, db: Session, batch_id: str, worker_id: str) -> CsvBatch:
        batch = self.get(db, batch_id)
        if batch is None or batch.worker_id != worker_id:
            raise LeaseLostError(f"Batch {batch_id} is not owned by worker {worker_id}")
        return batch

    def release_batch(self, db: Session, batch_id: str, worker_id: str, error_message: str) -> bool:
        """Give up ownership without finishing; the batch stays ``processing``.

        The lease is cleared so the batch is immediately resumable, either at
        startup or through the resume endpoint.  Returns False when the worker
        no longer owned the batch.
        """
        result = db.execute(
            update(CsvBatch)
            .where(
                CsvBatch.id == batch_id,
                CsvBatch.worker_id == worker_id,
                CsvBatch.status == BATCH_STATUS_PROCESSING,
            )
            .values(worker_id=None, lease_expires_at=None, error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        released = result.rowcount == 1
        if released:
            logger.info("Worker %s released batch %s for resume", worker_id, batch_id)
        return released

    def has_live_lease(self, batch: CsvBatch) -> bool:
        """True while a worker (in any process) holds an unexpired lease on ``batch``."""
        return (
            batch.status == BATCH_STATUS_PROCESSING
            and batch.lease_expires_at is not None
            and batch.lease_expires_at >= _utcnow()
        )

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def record_chunk(
        self,
        db: Session,
        batch_id: str,
        worker_id: str,
        outcomes: Sequence[RowOutcome],
        *,
        processed: int,
        successful: int,
        failed: int,
        lease_seconds: int,
    ) -> CsvBatch:
        """Persist one chunk: row results, absolute counters and lease, in one commit.

        Only rows still ``pending`` are written, so replaying a chunk after a
        lost commit cannot count a row twice.
        """
        try:
            batch = self._owned(db, batch_id, worker_id)
            if processed != successful + failed or processed > batch.total_rows:
                raise ValueError(
                    f"Inconsistent counters for batch {batch_id}: "
                    f"processed={processed} successful={successful} failed={failed} "
                    f"total={batch.total_rows}"
                )

            now = _utcnow()
            by_id = {o.row_job_id: o for o in outcomes}
            jobs = (
                db.query(CsvRowJob)
                .filter(CsvRowJob.id.in_(list(by_id)), CsvRowJob.batch_id == batch_id)
                .all()
            )
            for job in jobs:
                if job.status != ROW_STATUS_PENDING:
                    continue
                outcome = by_id[job.id]
                job.status = outcome.status
                job.generated_content = outcome.generated_content
                job.image_prompt = outcome.image_prompt
                job.image_path = outcome.image_url
                job.white_background_path = outcome.white_background_url
                job.error_message = outcome.error
                job.result_metadata = outcome.metadata
                job.processed_at = now
                if outcome.ok:
                    self._add_library_images(db, batch, outcome)

            batch.processed_rows = processed
            batch.successful_rows = successful
            batch.failed_rows = failed
            batch.lease_expires_at = now + timedelta(seconds=lease_seconds)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        db.refresh(batch)
        return batch

    def _add_library_images(self, db: Session, batch: CsvBatch, outcome: RowOutcome) -> None:
        variants = [("original", outcome.image_url), ("white_background", outcome.white_background_url)]
        for variant, url in variants:
            if not url:
                continue
            db.add(
                GeneratedImage(
                    user_id=batch.user_id,
                    storage_url=url,
                    prompt=outcome.image_prompt,
                    model=outcome.metadata.get("imageModel", ""),
                    generation_source=SOURCE_BATCH,
                    batch_id=batch.id,
                    generation_metadata={
                        "variant": variant,
                        "rowNumber": outcome.row_number,
                        "department": batch.department,
                        "aspectRatio": outcome.metadata.get("aspectRatio"),
                    },
                )
            )

    def count_outcomes(self, db: Session, batch_id: str) -> tuple[int, int]:
        """Return (successful, failed) row counts as stored on the row jobs."""
        rows = (
            db.query(CsvRowJob.status, func.count(CsvRowJob.id))
            .filter(CsvRowJob.batch_id == batch_id)
            .group_by(CsvRowJob.status)
            .all()
        )
        counts = dict(rows)
        return counts.get(ROW_STATUS_SUCCESS, 0), counts.get(ROW_STATUS_FAILED, 0)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def finalize(self, db: Session, batch_id: str, worker_id: str) -> CsvBatch:
        """Mark the batch completed/failed once every row has been processed.

        Counters are recomputed from the row jobs so the terminal record is
        exact even after a resume.
        """
        batch = self._owned(db, batch_id, worker_id)
        successful, failed = self.count_outcomes(db, batch_id)
        batch.successful_rows = successful
        batch.failed_rows = failed
        batch.processed_rows = successful + failed
        if batch.total_rows and failed == batch.total_rows:
            batch.status = BATCH_STATUS_FAILED
        else:
            batch.status = BATCH_STATUS_COMPLETED
        batch.error_message = f"{failed} rows failed processing" if failed else None
        batch.completed_at = _utcnow()
        batch.lease_expires_at = None
        db.commit()
        db.refresh(batch)
        logger.info(
            "Batch %s finished with status %s",
            batch_id,
            batch.status,
            extra={
                "batch_id": batch_id,
                "processed": batch.processed_rows,
                "successful": successful,
                "failed": failed,
            },
        )
        return batch

    def mark_cancelled(self, db: Session, batch_id: str, worker_id: str) -> CsvBatch:
        """Stop a batch between chunks; unprocessed rows stay pending."""
        batch = self._owned(db, batch_id, worker_id)
        batch.status = BATCH_STATUS_CANCELLED
        batch.completed_at = _utcnow()
        batch.lease_expires_at = None
        db.commit()
        db.refresh(batch)
        logger.info("Batch %s cancelled after %d rows", batch_id, batch.processed_rows)
        return batch

    def mark_failed(self, db: Session, batch_id: str, error_message: str) -> CsvBatch | None:
        """Transition a batch to FAILED and record the error."""
        batch = self.get(db, batch_id)
        if batch is None:
            logger.warning("mark_failed: batch %s not found", batch_id)
            return None
        batch.status = BATCH_STATUS_FAILED
        batch.error_message = error_message
        batch.completed_at = _utcnow()
        batch.lease_expires_at = None
        db.commit()
        db.refresh(batch)
        return batch

    def request_cancel(self, db: Session, batch_id: str) -> CsvBatch | None:
        """Cancel a queued batch now, or flag a processing one for the worker."""
        result = db.execute(
            update(CsvBatch)
            .where(CsvBatch.id == batch_id, CsvBatch.status == BATCH_STATUS_QUEUED)
            .values(status=BATCH_STATUS_CANCELLED, completed_at=_utcnow(), cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.execute(
                update(CsvBatch)
                .where(CsvBatch.id == batch_id, CsvBatch.status == BATCH_STATUS_PROCESSING)
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
        db.commit()
        batch = self.get(db, batch_id)
        if batch is not None:
            db.refresh(batch)
        return batch

    def is_cancel_requested(self, db: Session, batch_id: str) -> bool:
        flag = db.query(CsvBatch.cancel_requested).filter(CsvBatch.id == batch_id).scalar()
        return bool(flag)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, db: Session, batch_id: str) -> CsvBatch | None:
        """Fetch a batch by its UUID string."""
        return db.query(CsvBatch).filter(CsvBatch.id == batch_id).first()

    def list_for_user(
        self,
        db: Session,
        user_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[CsvBatch], int]:
        """Return a page of batches for a user plus the total count.

        Batches are ordered newest-first.
        """
        q = db.query(CsvBatch).filter(CsvBatch.user_id == user_id)
        total = q.count()
        offset = (page - 1) * page_size
        batches = q.order_by(CsvBatch.created_at.desc()).offset(offset).limit(page_size).all()
        return batches, total

    def list_row_jobs(self, db: Session, batch_id: str) -> list[CsvRowJob]:
        return (
            db.query(CsvRowJob)
            .filter(CsvRowJob.batch_id == batch_id)
            .order_by(CsvRowJob.row_number)
            .all()
        )

    def pending_row_jobs(self, db: Session, batch_id: str) -> list[CsvRowJob]:
        """Rows not yet processed, in file order."""
        return (
            db.query(CsvRowJob)
            .filter(CsvRowJob.batch_id == batch_id, CsvRowJob.status == ROW_STATUS_PENDING)
            .order_by(CsvRowJob.row_number)
            .all()
        )

    def resumable_batch_ids(self, db: Session) -> list[str]:
        """Queued batches and processing batches whose lease has expired."""
        now = _utcnow()
        rows = (
            db.query(CsvBatch.id)
            .filter(
                or_(
                    CsvBatch.status == BATCH_STATUS_QUEUED,
                    and_(
                        CsvBatch.status == BATCH_STATUS_PROCESSING,
                        or_(CsvBatch.lease_expires_at.is_(None), CsvBatch.lease_expires_at < now),
                    ),
                )
            )
            .order_by(CsvBatch.created_at)
            .all()
        )
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_batch(self, db: Session, batch: CsvBatch) -> None:
        """Delete a batch, its row jobs (cascade) and its library images."""
        db.query(GeneratedImage).filter(GeneratedImage.batch_id == batch.id).delete(
            synchronize_session=False
        )
        db.delete(batch)
        db.commit()
        logger.info("Deleted batch %s", batch.id)
