"""Tests for GET /api/files/{bucket}/{path}."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.storage import BUCKET_GENERATED_IMAGES, StorageService

client = TestClient(app)


@pytest.fixture
def storage(tmp_path):
    storage = StorageService(base_path=str(tmp_path))
    with patch("app.api.files.get_storage", return_value=storage):
        yield storage


def test_serves_stored_png(storage):
    """A stored image is served with its media type."""
    storage.store_file(BUCKET_GENERATED_IMAGES, "bulk/b1/original_0.png", b"\x89PNG fake")

    r = client.get("/api/files/generated-images/bulk/b1/original_0.png")

    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content == b"\x89PNG fake"


def test_missing_object_is_404(storage):
    """Unknown objects return 404."""
    assert client.get("/api/files/generated-images/bulk/none.png").status_code == 404


def test_unknown_bucket_is_404(storage):
    """Unknown buckets are not distinguishable from missing files."""
    r = client.get("/api/files/private/thing.png")
    assert r.status_code == 404
    assert r.json()["detail"] == "Not found"


def test_directory_is_404(storage):
    """A prefix that is a directory is not served."""
    storage.store_file(BUCKET_GENERATED_IMAGES, "bulk/b1/original_0.png", b"x")
    assert client.get("/api/files/generated-images/bulk/b1").status_code == 404
