"""Single generation API — one prompt or row through the department pipeline.

POST /api/generate/{department}

Runs the same steps as one bulk row (assistant → Imagen → optional
white-background edit → storage) synchronously and records the images in
the library with source ``manual``.
"""

import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.api.images import ImageResponse
from app.database import get_db
from app.models.batch import VALID_DEPARTMENTS
from app.models.image import SOURCE_MANUAL, GeneratedImage
from app.services.bulk_intake import IntakeError, check_user_id
from app.services.row_pipeline import RowOutcome, RowTask, build_row_pipeline
from generapix.errors import RowValidationError
from generapix.image_generator import SUPPORTED_ASPECT_RATIOS
from generapix.rows import build_trigger_text, parse_row

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generate", tags=["generate"])


class GenerateRequest(BaseModel):
    """Either a free-text ``prompt`` or a spreadsheet-style ``row``."""

    model_config = {"populate_by_name": True}

    user_id: Any = Field(default=None, alias="userId")
    prompt: str | None = None
    row: dict[str, Any] | None = None
    aspect_ratio: str = Field(default="1:1", alias="aspectRatio")


class GenerateResponse(BaseModel):
    success: bool = True
    department: str
    content: str | None
    imagePrompt: str | None
    originalImageUrl: str
    whiteBackgroundImageUrl: str | None
    threadId: str | None
    aspectRatio: str
    image: ImageResponse


def _trigger_text(body: GenerateRequest) -> str:
    if body.prompt and body.prompt.strip():
        return body.prompt.strip()
    if body.row:
        try:
            text = build_trigger_text(parse_row(body.row, 1))
        except RowValidationError as exc:
            raise HTTPException(400, str(exc)) from exc
        if text:
            return text
    raise HTTPException(400, "Prompt is required")


def _record_images(user_id: str, department: str, outcome: RowOutcome) -> ImageResponse:
    """Add the original (and white-background variant) to the library."""
    db = get_db()
    try:
        original = None
        for variant, url in (
            ("original", outcome.image_url),
            ("white_background", outcome.white_background_url),
        ):
            if not url:
                continue
            image = GeneratedImage(
                user_id=user_id,
                storage_url=url,
                prompt=outcome.image_prompt,
                model=outcome.metadata.get("imageModel", ""),
                generation_source=SOURCE_MANUAL,
                generation_metadata={
                    "variant": variant,
                    "department": department,
                    "aspectRatio": outcome.metadata.get("aspectRatio"),
                    "threadId": outcome.metadata.get("threadId"),
                },
            )
            db.add(image)
            if original is None:
                original = image
        db.commit()
        db.refresh(original)
        return ImageResponse.model_validate(original)
    finally:
        db.close()


@router.post("/{department}", response_model=GenerateResponse)
async def generate(department: str, body: GenerateRequest) -> GenerateResponse:
    """Generate one marketing image for ``department``.

    Returns 404 for an unknown department, 400 for a bad request and 502
    when the assistant or the image model fails.
    """
    if department not in VALID_DEPARTMENTS:
        raise HTTPException(404, f"Unknown department: {department}")
    try:
        user_id = check_user_id(body.user_id)
    except IntakeError as exc:
        raise HTTPException(exc.status_code, exc.message) from exc
    if body.aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise HTTPException(
            400,
            f"Invalid aspectRatio: {body.aspect_ratio}. "
            f"Expected one of: {', '.join(SUPPORTED_ASPECT_RATIOS)}",
        )
    trigger_text = _trigger_text(body)

    generation_id = uuid.uuid4().hex
    pipeline = build_row_pipeline(department, body.aspect_ratio)
    task = RowTask(row_job_id=0, row_number=1, trigger_text=trigger_text, row_data=body.row or {})
    logger.info("Single %s generation %s for user %s", department, generation_id, user_id)

    outcome = await pipeline.run(
        generation_id, task, storage_prefix=f"{SOURCE_MANUAL}/{user_id}/{generation_id}"
    )
    if not outcome.ok:
        raise HTTPException(status_code=502, detail=f"Failed to generate image: {outcome.error}")

    image = _record_images(user_id, department, outcome)
    return GenerateResponse(
        department=department,
        content=outcome.generated_content,
        imagePrompt=outcome.image_prompt,
        originalImageUrl=outcome.image_url,
        whiteBackgroundImageUrl=outcome.white_background_url,
        threadId=outcome.metadata.get("threadId"),
        aspectRatio=body.aspect_ratio,
        image=image,
    )
