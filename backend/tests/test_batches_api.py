"""Tests for the batches API (polling, rows, cancel, resume, delete)."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.models import Base
from app.services.batch_service import BatchService
from app.services.row_pipeline import RowOutcome, RowTask
from app.services.storage import BUCKET_CSV_UPLOADS, BUCKET_GENERATED_IMAGES, StorageService

client = TestClient(app)
_service = BatchService()


def _make_test_db():
    """Create a shared in-memory DB and return a session factory."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def env(tmp_path):
    SessionLocal = _make_test_db()
    storage = StorageService(base_path=str(tmp_path))
    with (
        patch("app.api.batches.get_db", side_effect=lambda: SessionLocal()),
        patch("app.api.batches.get_storage", return_value=storage),
    ):
        yield SessionLocal, storage


def _create(SessionLocal, n: int = 2, user_id: str = "user_1", storage_path: str | None = None) -> str:
    db = SessionLocal()
    batch = _service.create_batch(
        db,
        user_id=user_id,
        department="email_marketing",
        rows=[
            {"Product": f"Mug {i}", "Variant": "Matte", "Size": "12oz", "Region": "US", "Theme": "Autumn"}
            for i in range(1, n + 1)
        ],
        headers=["Product", "Variant", "Size", "Region", "Theme"],
        filename="user_1/bulk.csv",
        storage_bucket=BUCKET_CSV_UPLOADS if storage_path else None,
        storage_path=storage_path,
        metadata={"aspectRatio": "1:1", "batchSize": 3},
    )
    batch_id = batch.id
    db.close()
    return batch_id


def _complete(SessionLocal, batch_id: str) -> None:
    """Run the batch to completion with every row failed."""
    db = SessionLocal()
    _service.claim_batch(db, batch_id, "w", lease_seconds=600)
    jobs = _service.list_row_jobs(db, batch_id)
    outcomes = [RowOutcome.failure(RowTask.from_row_job(j), "boom") for j in jobs]
    _service.record_chunk(
        db, batch_id, "w", outcomes, processed=len(jobs), successful=0, failed=len(jobs), lease_seconds=600
    )
    _service.finalize(db, batch_id, "w")
    db.close()


def test_get_batch(env):
    """Polling returns counters, status and metadata."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)

    r = client.get(f"/api/batches/{batch_id}")

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "queued"
    assert data["total_rows"] == 2
    assert data["processed_rows"] == 0
    assert data["progress_percent"] == 0
    assert data["metadata"]["aspectRatio"] == "1:1"


def test_get_unknown_batch_is_404(env):
    """Unknown ids are 404."""
    assert client.get("/api/batches/nope").status_code == 404
    assert client.get("/api/batches/nope/rows").status_code == 404


def test_list_batches_paginates(env):
    """Listing is per user and paginated."""
    SessionLocal, _ = env
    for _ in range(3):
        _create(SessionLocal)
    _create(SessionLocal, user_id="user_2")

    data = client.get("/api/batches", params={"user_id": "user_1", "page_size": 2}).json()

    assert data["total"] == 3
    assert data["total_pages"] == 2
    assert len(data["batches"]) == 2


def test_rows_endpoint_returns_file_order(env):
    """Row jobs come back in row order with their trigger text."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal, 2)

    rows = client.get(f"/api/batches/{batch_id}/rows").json()

    assert [r["row_number"] for r in rows] == [1, 2]
    assert rows[0]["status"] == "pending"
    assert rows[0]["trigger_text"].startswith("Product: Mug 1")


def test_cancel_queued_batch(env):
    """Cancelling a queued batch ends it immediately."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)

    r = client.post(f"/api/batches/{batch_id}/cancel")

    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"


def test_cancel_finished_batch_is_409(env):
    """A finished batch cannot be cancelled."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal, 1)
    _complete(SessionLocal, batch_id)

    assert client.post(f"/api/batches/{batch_id}/cancel").status_code == 409


def test_resume_schedules_queued_batch(env):
    """Resuming a queued batch schedules it and returns 202."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)
    with (
        patch("app.api.batches.is_running", return_value=False),
        patch("app.api.batches.start_batch", return_value=True) as mock_start,
    ):
        r = client.post(f"/api/batches/{batch_id}/resume")

    assert r.status_code == 202
    mock_start.assert_called_once_with(batch_id)


def test_resume_running_batch_is_409(env):
    """A batch already running here cannot be resumed again."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)
    with (
        patch("app.api.batches.is_running", return_value=True),
        patch("app.api.batches.start_batch") as mock_start,
    ):
        r = client.post(f"/api/batches/{batch_id}/resume")

    assert r.status_code == 409
    mock_start.assert_not_called()


def test_resume_batch_leased_by_another_worker_is_409(env):
    """A live lease held by another process blocks resume before anything is scheduled."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)
    db = SessionLocal()
    _service.claim_batch(db, batch_id, "other_process", lease_seconds=600)
    db.close()

    with (
        patch("app.api.batches.is_running", return_value=False),
        patch("app.api.batches.start_batch", return_value=True) as mock_start,
    ):
        r = client.post(f"/api/batches/{batch_id}/resume")

    assert r.status_code == 409
    assert r.json()["detail"] == "Batch is already being processed"
    mock_start.assert_not_called()


@pytest.mark.parametrize("release", ["expired", "released"])
def test_resume_processing_batch_without_live_lease(env, release):
    """A processing batch whose lease expired or was released is resumable."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)
    db = SessionLocal()
    if release == "expired":
        _service.claim_batch(db, batch_id, "dead_worker", lease_seconds=-1)
    else:
        _service.claim_batch(db, batch_id, "w", lease_seconds=600)
        assert _service.release_batch(db, batch_id, "w", "saving failed")
    db.close()

    with (
        patch("app.api.batches.is_running", return_value=False),
        patch("app.api.batches.start_batch", return_value=True) as mock_start,
    ):
        r = client.post(f"/api/batches/{batch_id}/resume")

    assert r.status_code == 202
    assert r.json()["status"] == "processing"
    mock_start.assert_called_once_with(batch_id)


def test_resume_finished_batch_is_409(env):
    """Finished batches are not resumable."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal, 1)
    _complete(SessionLocal, batch_id)

    r = client.post(f"/api/batches/{batch_id}/resume")

    assert r.status_code == 409
    assert "only queued or processing" in r.json()["detail"]


def test_delete_active_batch_is_409(env):
    """Queued or processing batches cannot be deleted."""
    SessionLocal, _ = env
    batch_id = _create(SessionLocal)
    assert client.delete(f"/api/batches/{batch_id}").status_code == 409


def test_delete_finished_batch_removes_files(env):
    """Deleting a finished batch removes its records, images and CSV backup."""
    SessionLocal, storage = env
    storage.store_file(BUCKET_CSV_UPLOADS, "user_1/bulk.csv", b"csv")
    batch_id = _create(SessionLocal, 1, storage_path="user_1/bulk.csv")
    storage.store_file(BUCKET_GENERATED_IMAGES, f"bulk/{batch_id}/original_0.png", b"png")
    _complete(SessionLocal, batch_id)

    r = client.delete(f"/api/batches/{batch_id}")

    assert r.status_code == 204
    assert client.get(f"/api/batches/{batch_id}").status_code == 404
    assert not (storage.base_path / "generated-images" / "bulk" / batch_id).exists()
    assert not (storage.base_path / "csv-uploads" / "user_1" / "bulk.csv").exists()


def test_delete_unknown_batch_is_404(env):
    """Unknown ids are 404."""
    assert client.delete("/api/batches/nope").status_code == 404
