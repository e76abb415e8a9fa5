"""Tests for the bucket-scoped StorageService."""

import pytest

from app.services.storage import (
    BUCKET_CSV_UPLOADS,
    BUCKET_GENERATED_IMAGES,
    StorageError,
    StorageService,
)


@pytest.fixture
def storage(tmp_path):
    return StorageService(base_path=str(tmp_path))


def test_store_and_read(storage, tmp_path):
    """store_file writes under {base}/{bucket}/{path} and returns the stable URL."""
    url = storage.store_file(BUCKET_GENERATED_IMAGES, "bulk/b1/original_0.png", b"png")

    assert url == "/api/files/generated-images/bulk/b1/original_0.png"
    assert (tmp_path / "generated-images" / "bulk" / "b1" / "original_0.png").read_bytes() == b"png"
    assert storage.read(BUCKET_GENERATED_IMAGES, "bulk/b1/original_0.png") == b"png"


def test_no_overwrite(storage):
    """overwrite=False refuses to replace an existing object."""
    storage.store_file(BUCKET_CSV_UPLOADS, "u/a.csv", b"1")
    with pytest.raises(FileExistsError):
        storage.store_file(BUCKET_CSV_UPLOADS, "u/a.csv", b"2", overwrite=False)
    assert storage.read(BUCKET_CSV_UPLOADS, "u/a.csv") == b"1"


def test_unknown_bucket_rejected(storage):
    """Only the known buckets can be written."""
    with pytest.raises(StorageError):
        storage.store_file("secrets", "a.txt", b"x")


@pytest.mark.parametrize("path", ["../outside.txt", "bulk/../../escape.png", ""])
def test_path_escape_rejected(storage, path):
    """Paths resolving outside (or to) the bucket root are refused."""
    with pytest.raises(StorageError):
        storage.store_file(BUCKET_GENERATED_IMAGES, path, b"x")


def test_url_to_path(storage, tmp_path):
    """Stable URLs map back to files; foreign URLs map to None."""
    url = storage.store_file(BUCKET_GENERATED_IMAGES, "manual/u/x.png", b"x")

    assert storage.url_to_path(url) == (tmp_path / "generated-images" / "manual" / "u" / "x.png").resolve()
    assert storage.url_to_path("https://example.com/x.png") is None
    assert storage.url_to_path("/api/files/unknown/x.png") is None


def test_delete_and_delete_prefix(storage, tmp_path):
    """delete removes one object; delete_prefix removes a batch folder."""
    storage.store_file(BUCKET_GENERATED_IMAGES, "bulk/b1/original_0.png", b"a")
    storage.store_file(BUCKET_GENERATED_IMAGES, "bulk/b1/white_0.png", b"b")
    storage.store_file(BUCKET_CSV_UPLOADS, "u/a.csv", b"c")

    assert storage.delete(BUCKET_CSV_UPLOADS, "u/a.csv") is True
    assert storage.delete(BUCKET_CSV_UPLOADS, "u/a.csv") is False

    storage.delete_prefix(BUCKET_GENERATED_IMAGES, "bulk/b1")
    assert not (tmp_path / "generated-images" / "bulk" / "b1").exists()
