"""Image API — manual creation, editing and the generated-image library.

Implements:
  POST   /api/images/create — prompt (+ recent chat turns) → image
  POST   /api/images/edit   — image + instruction → edited image
  GET    /api/images        — a user's library, newest first
  DELETE /api/images/{id}   — remove an image and its stored file

Created and edited images are stored in the ``generated-images`` bucket and
recorded as ``GeneratedImage`` rows with source ``manual`` / ``editor``.
"""

import base64
import binascii
import logging
import uuid
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from app.database import get_db
from app.models.image import (
    SOURCE_EDITOR,
    SOURCE_MANUAL,
    VALID_GENERATION_SOURCES,
    GeneratedImage,
)
from app.services.ai_clients import get_image_generator
from app.services.storage import BUCKET_GENERATED_IMAGES, get_storage
from generapix.image_generator import EditResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/images", tags=["images"])

_MAX_IMAGE_BYTES = 5 * 1024 * 1024


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class ChatTurn(BaseModel):
    role: str = "user"
    content: str = ""


class CreateImageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    prompt: str
    conversation_history: list[ChatTurn] = Field(default_factory=list)


class EditImageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    instruction: str
    image_base64: str


class ImageResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    user_id: str
    storage_url: str
    prompt: str | None
    model: str
    generation_source: str
    generation_metadata: dict | None
    batch_id: str | None
    created_at: datetime


class ImageResultResponse(BaseModel):
    """Model reply; ``image`` is None when the model answered with text only."""

    success: bool = True
    message: str
    image: ImageResponse | None = None


class ImageListResponse(BaseModel):
    images: list[ImageResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _decode_image(data: str) -> bytes:
    # Accept both raw base64 and data: URLs
    if data.startswith("data:"):
        data = data.partition(",")[2]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(400, "Image must be base64-encoded") from None


def _save_result(
    user_id: str,
    result: EditResult,
    *,
    prompt: str,
    model: str,
    source: str,
) -> ImageResponse | None:
    """Store the generated image (if any) and record it in the library."""
    if not result.has_image:
        return None

    path = f"{source}/{user_id}/{uuid.uuid4().hex}.png"
    url = get_storage().store_file(BUCKET_GENERATED_IMAGES, path, result.image_bytes)

    db = get_db()
    try:
        image = GeneratedImage(
            user_id=user_id,
            storage_url=url,
            prompt=prompt,
            model=model,
            generation_source=source,
            generation_metadata={"responseText": result.text} if result.text else None,
        )
        db.add(image)
        db.commit()
        db.refresh(image)
        return ImageResponse.model_validate(image)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/create", response_model=ImageResultResponse)
async def create_image(body: CreateImageRequest) -> ImageResultResponse:
    """Create an image from a prompt, using the last few chat turns as context."""
    if not body.prompt.strip():
        raise HTTPException(400, "Prompt is required")

    generator = get_image_generator()
    try:
        result = await generator.create(
            body.prompt, [turn.model_dump() for turn in body.conversation_history]
        )
    except Exception as exc:
        logger.exception("Image creation failed for user %s", body.user_id)
        raise HTTPException(status_code=502, detail=f"Failed to create image: {exc}")

    image = _save_result(
        body.user_id, result, prompt=body.prompt, model=generator.edit_model, source=SOURCE_MANUAL
    )
    return ImageResultResponse(message=result.text, image=image)


@router.post("/edit", response_model=ImageResultResponse)
async def edit_image(body: EditImageRequest) -> ImageResultResponse:
    """Apply an editing instruction to an uploaded image.

    Returns 413 for images over 5 MB.  When the model only answers in text
    the response carries the text and no image.
    """
    if not body.instruction.strip():
        raise HTTPException(400, "Editing instruction is required")
    if not body.image_base64.strip():
        raise HTTPException(400, "Image is required")

    image_bytes = _decode_image(body.image_base64.strip())
    if len(image_bytes) > _MAX_IMAGE_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"Image too large. Maximum size is {_MAX_IMAGE_BYTES // 1024 // 1024} MB.",
        )

    generator = get_image_generator()
    try:
        result = await generator.edit(body.instruction, image_bytes)
    except Exception as exc:
        logger.exception("Image edit failed for user %s", body.user_id)
        raise HTTPException(status_code=502, detail=f"Failed to edit image: {exc}")

    image = _save_result(
        body.user_id,
        result,
        prompt=body.instruction,
        model=generator.edit_model,
        source=SOURCE_EDITOR,
    )
    return ImageResultResponse(message=result.text, image=image)


@router.get("", response_model=ImageListResponse)
def list_images(
    user_id: str = Query(..., min_length=1),
    source: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ImageListResponse:
    """Return a user's generated images, newest first."""
    if source is not None and source not in VALID_GENERATION_SOURCES:
        raise HTTPException(
            400, f"Invalid source: {source}. Expected one of: {', '.join(VALID_GENERATION_SOURCES)}"
        )

    db = get_db()
    try:
        query = db.query(GeneratedImage).filter(GeneratedImage.user_id == user_id)
        if source:
            query = query.filter(GeneratedImage.generation_source == source)
        total = query.count()
        rows = (
            query.order_by(GeneratedImage.created_at.desc(), GeneratedImage.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        images = [ImageResponse.model_validate(r) for r in rows]
    finally:
        db.close()

    return ImageListResponse(images=images, total=total, limit=limit, offset=offset)


@router.delete("/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_image(image_id: str) -> Response:
    """Delete a library image and (best-effort) its stored file."""
    db = get_db()
    try:
        image = db.get(GeneratedImage, image_id)
        if not image:
            raise HTTPException(status_code=404, detail="Image not found")
        url = image.storage_url
        db.delete(image)
        db.commit()
    finally:
        db.close()

    path = get_storage().url_to_path(url)
    if path is not None and path.is_file():
        try:
            path.unlink()
        except OSError:
            logger.warning("Could not delete stored file for image %s", image_id, exc_info=True)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
