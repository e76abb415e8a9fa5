"""Persistent object storage service.

Provides a local-disk storage backend with a bucket/path interface so an
S3- or Supabase-style backend can replace it later.

Objects are stored at: {base_path}/{bucket}/{path}
Served at stable URLs:  /api/files/{bucket}/{path}
"""

import logging
import shutil
from pathlib import Path

from app.config import settings

logger = logging.getLogger(__name__)

BUCKET_CSV_UPLOADS = "csv-uploads"
BUCKET_CSV_TEMPLATES = "csv-templates"
BUCKET_GENERATED_IMAGES = "generated-images"

KNOWN_BUCKETS = frozenset({BUCKET_CSV_UPLOADS, BUCKET_CSV_TEMPLATES, BUCKET_GENERATED_IMAGES})

URL_PREFIX = "/api/files/"


class StorageError(OSError):
    """Raised for unknown buckets or paths escaping their bucket."""


class StorageService:
    """Manages bucket-scoped file storage.

    The local backend writes files to ``{base_path}/{bucket}/``.  Callers
    only ever see the stable URL path returned by ``store_file``.
    """

    def __init__(self, base_path: str | None = None) -> None:
        self._base = Path(base_path or settings.storage_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _bucket_dir(self, bucket: str) -> Path:
        if bucket not in KNOWN_BUCKETS:
            raise StorageError(f"Unknown storage bucket: {bucket}")
        return self._base / bucket

    def _object_path(self, bucket: str, path: str) -> Path:
        root = self._bucket_dir(bucket).resolve()
        candidate = (root / path.lstrip("/")).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise StorageError(f"Invalid object path: {path}")
        return candidate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def base_path(self) -> Path:
        return self._base

    def store_file(self, bucket: str, path: str, data: bytes, *, overwrite: bool = True) -> str:
        """Write raw bytes to ``bucket/path`` and return the stable URL path.

        ``path`` may contain forward slashes for subdirectories
        (e.g. ``bulk/{batch_id}/original_0.png``).  Intermediate directories
        are created automatically.

        Raises:
            FileExistsError: ``overwrite`` is False and the object exists.
        """
        dest = self._object_path(bucket, path)
        if not overwrite and dest.exists():
            raise FileExistsError(f"{bucket}/{path} already exists")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        logger.debug("Stored %s bytes → %s", len(data), dest)
        return f"{URL_PREFIX}{bucket}/{path.lstrip('/')}"

    def resolve(self, bucket: str, path: str) -> Path:
        """Return the absolute path for a stored object (for serving)."""
        return self._object_path(bucket, path)

    def read(self, bucket: str, path: str) -> bytes:
        return self._object_path(bucket, path).read_bytes()

    def url_to_path(self, url_path: str) -> Path | None:
        """Convert a stable URL path back to an absolute filesystem path.

        Returns None when the URL is not a storage URL or points outside
        its bucket.
        """
        if not url_path.startswith(URL_PREFIX):
            return None
        bucket, _, relative = url_path[len(URL_PREFIX):].partition("/")
        try:
            return self._object_path(bucket, relative)
        except StorageError:
            return None

    def delete(self, bucket: str, path: str) -> bool:
        """Delete one object; returns False when it did not exist."""
        target = self._object_path(bucket, path)
        if not target.exists():
            return False
        target.unlink()
        logger.debug("Deleted %s/%s", bucket, path)
        return True

    def delete_prefix(self, bucket: str, prefix: str) -> None:
        """Delete every object under ``bucket/prefix`` (e.g. a batch folder)."""
        d = self._object_path(bucket, prefix)
        if d.exists():
            shutil.rmtree(d, ignore_errors=True)
            logger.info("Deleted storage prefix %s/%s", bucket, prefix)


# Module-level singleton, created on first use so tests can override settings.
_storage: StorageService | None = None


def get_storage() -> StorageService:
    """Return the module-level StorageService singleton."""
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
