"""File serving endpoint for stored objects.

Stable URL pattern: /api/files/{bucket}/{path}
  e.g. /api/files/generated-images/bulk/{batch_id}/original_0.png
"""

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from app.services.storage import StorageError, get_storage

router = APIRouter(prefix="/api/files", tags=["files"])

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


@router.get("/{bucket}/{path:path}")
async def serve_file(bucket: str, path: str) -> FileResponse:
    """Serve a stored object.

    Unknown buckets and paths resolving outside their bucket are reported
    as 404 so the storage layout is not revealed.
    """
    try:
        file_path = get_storage().resolve(bucket, path)
    except StorageError:
        raise HTTPException(status_code=404, detail="Not found") from None

    if not file_path.exists() or not file_path.is_file():
        raise HTTPException(status_code=404, detail="Not found")

    media_type = _MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    return FileResponse(file_path, media_type=media_type)
