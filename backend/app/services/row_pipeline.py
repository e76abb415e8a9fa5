"""Per-row generation pipeline.

One spreadsheet row goes through:

    1. assistant run (bounded poll)      → generated text
    2. reference cleaning + JSON prompt  → image prompt (+ no-text suffix)
    3. Imagen                            → original image
    4. Gemini edit (google_sem only)     → white-background variant, optional
    5. storage                           → bulk/{batch_id}/original_{index}.png
                                           (manual runs: manual/{user}/{id}/...)

The pipeline never raises for a row: every failure becomes a ``RowOutcome``
with status ``failed`` so one bad row cannot abort its siblings.
"""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Any

from PIL import Image, UnidentifiedImageError

from app.models.batch import DEPARTMENT_GOOGLE_SEM
from app.models.row_job import ROW_STATUS_FAILED, ROW_STATUS_SUCCESS, CsvRowJob
from app.services.ai_clients import assistant_id_for, get_assistant_client, get_image_generator
from app.services.storage import BUCKET_GENERATED_IMAGES, StorageService, get_storage
from generapix.assistant import AssistantClient
from generapix.errors import GenerationError, ImageGenerationError
from generapix.image_generator import ImageGenerator
from generapix.prompts import WHITE_BACKGROUND_INSTRUCTION, build_image_prompt
from generapix.reference_cleaner import remove_reference_markers

logger = logging.getLogger(__name__)

# Departments whose images also get the catalog-style white-background edit
WHITE_BACKGROUND_DEPARTMENTS = frozenset({DEPARTMENT_GOOGLE_SEM})


@dataclass
class RowTask:
    """Input for one row: what the worker hands to the pipeline."""

    row_job_id: int
    row_number: int  # 1-based
    trigger_text: str
    row_data: dict[str, Any] = field(default_factory=dict)

    @property
    def row_index(self) -> int:
        """0-based index used in storage object names."""
        return self.row_number - 1

    @classmethod
    def from_row_job(cls, job: CsvRowJob) -> "RowTask":
        return cls(
            row_job_id=job.id,
            row_number=job.row_number,
            trigger_text=job.trigger_text,
            row_data=dict(job.row_data or {}),
        )


@dataclass
class RowOutcome:
    """Result-or-error value for one row."""

    row_job_id: int
    row_number: int
    status: str
    generated_content: str | None = None
    image_prompt: str | None = None
    image_url: str | None = None
    white_background_url: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ROW_STATUS_SUCCESS

    @classmethod
    def failure(cls, task: RowTask, error: str, **metadata: Any) -> "RowOutcome":
        return cls(
            row_job_id=task.row_job_id,
            row_number=task.row_number,
            status=ROW_STATUS_FAILED,
            error=error,
            metadata={"rowData": task.row_data, **metadata},
        )


def describe_error(exc: BaseException) -> str:
    """Short error string stored on a failed row."""
    if isinstance(exc, GenerationError):
        return str(exc)
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"[:1000]


def _as_png(data: bytes) -> tuple[bytes, tuple[int, int]]:
    """Re-encode image bytes as PNG (no-op for PNG input) and return its size."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageGenerationError("Image model returned bytes that are not an image") from exc
    if img.format == "PNG":
        return data, img.size
    if img.mode not in ("RGB", "RGBA", "L"):
        img = img.convert("RGBA")
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue(), img.size


class RowPipeline:
    """Runs the generation steps for the rows of one batch."""

    def __init__(
        self,
        assistant: AssistantClient,
        images: ImageGenerator,
        *,
        assistant_id: str,
        aspect_ratio: str = "1:1",
        white_background: bool = False,
        storage: StorageService | None = None,
    ) -> None:
        self._assistant = assistant
        self._images = images
        self._storage = storage or get_storage()
        self.assistant_id = assistant_id
        self.aspect_ratio = aspect_ratio
        self.white_background = white_background

    async def run(
        self, batch_id: str, task: RowTask, *, storage_prefix: str | None = None
    ) -> RowOutcome:
        """Process one row; always returns an outcome.

        Images land under ``storage_prefix`` (default ``bulk/{batch_id}``).
        """
        prefix = storage_prefix or f"bulk/{batch_id}"
        stage = "assistant"
        try:
            reply = await self._assistant.generate(task.trigger_text, self.assistant_id)
            generated = remove_reference_markers(reply.text)
            prompt = build_image_prompt(generated)

            stage = "image"
            raw = (await self._images.generate(prompt, aspect_ratio=self.aspect_ratio))[0]
            original, size = _as_png(raw)

            white: bytes | None = None
            if self.white_background:
                stage = "white_background"
                white = await self._white_background(task, original)

            stage = "storage"
            image_url = await self._store(prefix, f"original_{task.row_index}.png", original)
            white_url = None
            if white is not None:
                white_url = await self._store(prefix, f"white_{task.row_index}.png", white)
        except Exception as exc:
            logger.warning(
                "Row %d of batch %s failed at %s: %s",
                task.row_number,
                batch_id,
                stage,
                exc,
                extra={"batch_id": batch_id, "row_number": task.row_number, "stage": stage},
            )
            return RowOutcome.failure(task, describe_error(exc), failedStage=stage)

        logger.info(
            "Row %d of batch %s generated",
            task.row_number,
            batch_id,
            extra={"batch_id": batch_id, "row_number": task.row_number},
        )
        return RowOutcome(
            row_job_id=task.row_job_id,
            row_number=task.row_number,
            status=ROW_STATUS_SUCCESS,
            generated_content=generated,
            image_prompt=prompt,
            image_url=image_url,
            white_background_url=white_url,
            metadata={
                "threadId": reply.thread_id,
                "runId": reply.run_id,
                "assistantId": self.assistant_id,
                "aspectRatio": self.aspect_ratio,
                "imageModel": self._images.model,
                "width": size[0],
                "height": size[1],
                "hasOriginalImage": True,
                "hasWhiteBackgroundImage": white_url is not None,
            },
        )

    async def _white_background(self, task: RowTask, original: bytes) -> bytes | None:
        """Catalog-style variant; any failure falls back to the original only."""
        try:
            result = await self._images.edit(WHITE_BACKGROUND_INSTRUCTION, original)
            if not result.has_image:
                logger.warning(
                    "White-background edit for row %d returned text only", task.row_number
                )
                return None
            return _as_png(result.image_bytes)[0]
        except Exception as exc:
            logger.warning(
                "White-background edit for row %d failed, keeping original: %s",
                task.row_number,
                exc,
            )
            return None

    async def _store(self, prefix: str, filename: str, data: bytes) -> str:
        return await asyncio.to_thread(
            self._storage.store_file,
            BUCKET_GENERATED_IMAGES,
            f"{prefix}/{filename}",
            data,
        )


def build_row_pipeline(department: str, aspect_ratio: str) -> RowPipeline:
    """Wire a pipeline for ``department`` from the configured vendor clients."""
    return RowPipeline(
        get_assistant_client(),
        get_image_generator(),
        assistant_id=assistant_id_for(department),
        aspect_ratio=aspect_ratio,
        white_background=department in WHITE_BACKGROUND_DEPARTMENTS,
    )

