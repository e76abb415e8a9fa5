"""Background batch worker — walks a CSV batch chunk by chunk.

The worker is started via ``start_batch`` (``asyncio.create_task``) from the
bulk endpoints.  Processing model:

    1. Claim the batch (conditional UPDATE + lease), or exit if someone else owns it.
    2. Load the rows still ``pending`` (all of them for a fresh batch).
    3. Split them into consecutive chunks of ``batchSize`` rows.
    4. Per chunk: run every row concurrently, join with settle-all semantics,
       then persist row results and absolute counters in one commit.
    5. Sleep a fixed delay between chunks; check for cancellation before each one.
    6. Finalize: ``failed`` if every row failed, else ``completed``.

If saving progress still fails after the retries, the batch is released
(still ``processing``, no lease) rather than failed, so it can be resumed.

Resuming after a crash re-enters at step 1: rows persisted by an earlier
chunk are skipped and the counters start from their stored outcomes.
"""

import asyncio
import functools
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.database import get_db
from app.logging_config import bind_batch_id
from app.models.row_job import ROW_STATUS_FAILED, ROW_STATUS_SUCCESS
from app.services.batch_service import BatchService, LeaseLostError
from app.services.row_pipeline import RowOutcome, RowPipeline, RowTask, build_row_pipeline, describe_error

logger = logging.getLogger(__name__)

_batch_service = BatchService()

T = TypeVar("T")

ProcessRow = Callable[[RowTask], Awaitable[RowOutcome]]
OnChunk = Callable[[int, list[RowOutcome], "BatchProgress"], Awaitable[None]]
ShouldCancel = Callable[[], Awaitable[bool]]

# Batches currently running in this process, by batch id
_running: dict[str, asyncio.Task] = {}

# Failures of our own database/storage; the batch is released for resume, never failed
_INFRASTRUCTURE_ERRORS = (SQLAlchemyError, OSError)

_RELEASED_MESSAGE = "Batch progress could not be saved; processing will resume from the last saved chunk."


@dataclass
class BatchProgress:
    """Running counters; ``processed == successful + failed`` at all times."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    chunks_done: int = 0
    cancelled: bool = False

    def add(self, outcomes: Sequence[RowOutcome]) -> None:
        ok = sum(1 for o in outcomes if o.status == ROW_STATUS_SUCCESS)
        bad = sum(1 for o in outcomes if o.status == ROW_STATUS_FAILED)
        self.successful += ok
        self.failed += bad
        self.processed += ok + bad
        self.chunks_done += 1


def partition(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split ``items`` into consecutive chunks of at most ``batch_size``, keeping order."""
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


async def run_chunks(
    tasks: Sequence[RowTask],
    *,
    batch_size: int,
    total_rows: int,
    process_row: ProcessRow,
    on_chunk: OnChunk,
    chunk_delay: float = 0.0,
    should_cancel: ShouldCancel | None = None,
    initial: BatchProgress | None = None,
) -> BatchProgress:
    """Process ``tasks`` in sequential chunks with concurrent rows inside each chunk.

    ``on_chunk`` is awaited after every chunk with the chunk index, its
    outcomes and the cumulative progress; it is where progress gets
    persisted.  A row that raises instead of returning an outcome is
    recorded as failed; it never affects its siblings.
    """
    progress = initial or BatchProgress()
    chunks = partition(tasks, batch_size)
    logger.info("Processing %d rows in %d chunks of up to %d", len(tasks), len(chunks), batch_size)

    for index, chunk in enumerate(chunks):
        if should_cancel is not None and await should_cancel():
            logger.info("Cancellation requested before chunk %d", index + 1)
            progress.cancelled = True
            break

        logger.info("Starting chunk %d/%d (%d rows)", index + 1, len(chunks), len(chunk))
        results = await asyncio.gather(
            *(process_row(task) for task in chunk),
            return_exceptions=True,
        )

        outcomes: list[RowOutcome] = []
        for task, result in zip(chunk, results):
            if isinstance(result, RowOutcome):
                outcomes.append(result)
            elif isinstance(result, Exception):
                outcomes.append(RowOutcome.failure(task, describe_error(result)))
            else:
                raise result

        progress.add(outcomes)
        if progress.processed > total_rows:
            raise RuntimeError(
                f"Processed {progress.processed} rows but batch only has {total_rows}"
            )
        await on_chunk(index, outcomes, progress)
        logger.info(
            "Chunk %d/%d done: %d/%d rows processed (%d ok, %d failed)",
            index + 1,
            len(chunks),
            progress.processed,
            total_rows,
            progress.successful,
            progress.failed,
        )

        if chunk_delay > 0 and index < len(chunks) - 1:
            await asyncio.sleep(chunk_delay)

    return progress


# ---------------------------------------------------------------------------
# Persistence with retries (database and storage hiccups only)
# ---------------------------------------------------------------------------


@retry(
    retry=retry_if_exception_type(_INFRASTRUCTURE_ERRORS),
    stop=stop_after_attempt(settings.bulk_persist_attempts),
    wait=wait_exponential(multiplier=0.5, max=5),
    reraise=True,
    before_sleep=before_sleep_log(logger, logging.WARNING),
)
async def _persist_chunk(
    db: Session,
    batch_id: str,
    worker_id: str,
    outcomes: list[RowOutcome],
    progress: BatchProgress,
) -> None:
    _batch_service.record_chunk(
        db,
        batch_id,
        worker_id,
        outcomes,
        processed=progress.processed,
        successful=progress.successful,
        failed=progress.failed,
        lease_seconds=settings.bulk_lease_seconds,
    )


def _friendly_error_message(exc: Exception) -> str:
    """Convert a raw worker exception into a short message for the batch record.

    The raw message is logged at ERROR level so developers can investigate.
    """
    raw = str(exc)
    logger.error("Raw batch error: %s", raw)

    if "OPENAI_API_KEY" in raw or "GEMINI_API_KEY" in raw:
        return "Configuration error — please contact support."
    if "No assistant configured" in raw:
        return "Unsupported department for bulk processing."
    return "Batch processing failed — please try again."


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def process_batch(
    batch_id: str,
    *,
    pipeline: RowPipeline | None = None,
    chunk_delay: float | None = None,
    db_factory: Callable[[], Session] = get_db,
) -> None:
    """Run a batch to completion (or cancellation) in the background.

    Args:
        batch_id: The CsvBatch UUID string.
        pipeline: Row pipeline to use; built from the batch's department and
                  aspect ratio when omitted.
        chunk_delay: Seconds between chunks (defaults to settings).
        db_factory: Session factory; overridden in tests.
    """
    with bind_batch_id(batch_id):
        await _run_batch(batch_id, pipeline, chunk_delay, db_factory)


async def _run_batch(
    batch_id: str,
    pipeline: RowPipeline | None,
    chunk_delay: float | None,
    db_factory: Callable[[], Session],
) -> None:
    worker_id = uuid.uuid4().hex
    delay = settings.bulk_chunk_delay_seconds if chunk_delay is None else chunk_delay

    db = db_factory()
    try:
        batch = _batch_service.claim_batch(
            db, batch_id, worker_id, lease_seconds=settings.bulk_lease_seconds
        )
        if batch is None:
            return

        meta = batch.batch_metadata or {}
        batch_size = int(meta.get("batchSize") or settings.bulk_default_batch_size)
        if pipeline is None:
            pipeline = build_row_pipeline(batch.department, meta.get("aspectRatio") or "1:1")

        tasks = [RowTask.from_row_job(job) for job in _batch_service.pending_row_jobs(db, batch_id)]
        successful, failed = _batch_service.count_outcomes(db, batch_id)
        initial = BatchProgress(processed=successful + failed, successful=successful, failed=failed)
        if initial.processed:
            logger.info(
                "Resuming batch %s at %d/%d rows",
                batch_id,
                initial.processed,
                batch.total_rows,
            )

        async def on_chunk(index: int, outcomes: list[RowOutcome], progress: BatchProgress) -> None:
            await _persist_chunk(db, batch_id, worker_id, outcomes, progress)

        async def should_cancel() -> bool:
            return _batch_service.is_cancel_requested(db, batch_id)

        progress = await run_chunks(
            tasks,
            batch_size=batch_size,
            total_rows=batch.total_rows,
            process_row=functools.partial(pipeline.run, batch_id),
            on_chunk=on_chunk,
            chunk_delay=delay,
            should_cancel=should_cancel,
            initial=initial,
        )

        if progress.cancelled:
            _batch_service.mark_cancelled(db, batch_id, worker_id)
        else:
            _batch_service.finalize(db, batch_id, worker_id)

    except LeaseLostError:
        logger.warning("Worker %s lost batch %s to another worker; stopping", worker_id, batch_id)
    except _INFRASTRUCTURE_ERRORS:
        # Rows not yet saved stay pending; a later claim picks them up
        logger.exception("Batch %s interrupted by an infrastructure error", batch_id)
        try:
            db.rollback()
            _batch_service.release_batch(db, batch_id, worker_id, _RELEASED_MESSAGE)
        except Exception:
            logger.exception("Could not release batch %s; it resumes once its lease expires", batch_id)
    except Exception as exc:
        logger.exception("Batch %s failed", batch_id)
        friendly_msg = _friendly_error_message(exc)
        try:
            db.rollback()
            _batch_service.mark_failed(db, batch_id, friendly_msg)
        except Exception:
            logger.exception("Could not mark batch %s as failed", batch_id)
    finally:
        db.close()


def is_running(batch_id: str) -> bool:
    """True while this process has a live task for ``batch_id``."""
    task = _running.get(batch_id)
    return task is not None and not task.done()


def _forget(batch_id: str, task: asyncio.Task) -> None:
    if _running.get(batch_id) is task:
        del _running[batch_id]


def start_batch(batch_id: str, **kwargs) -> bool:
    """Schedule ``process_batch`` on the running loop; False if already running here."""
    if is_running(batch_id):
        return False
    task = asyncio.create_task(process_batch(batch_id, **kwargs))
    _running[batch_id] = task
    task.add_done_callback(functools.partial(_forget, batch_id))
    return True


def resume_orphaned_batches(db_factory: Callable[[], Session] = get_db) -> list[str]:
    """Start every queued batch and every processing batch with an expired lease."""
    db = db_factory()
    try:
        batch_ids = _batch_service.resumable_batch_ids(db)
    finally:
        db.close()
    started = [bid for bid in batch_ids if start_batch(bid)]
    if started:
        logger.info("Resuming %d orphaned batches", len(started), extra={"batch_ids": started})
    return started
