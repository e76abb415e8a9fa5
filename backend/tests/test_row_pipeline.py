"""Tests for the per-row generation pipeline."""

import io
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

from app.models.row_job import ROW_STATUS_FAILED, ROW_STATUS_SUCCESS
from app.services.row_pipeline import RowPipeline, RowTask, build_row_pipeline
from app.services.storage import StorageService
from generapix.assistant import AssistantReply
from generapix.errors import ImageGenerationError
from generapix.image_generator import EditResult
from generapix.prompts import NO_TEXT_SUFFIX, WHITE_BACKGROUND_INSTRUCTION


def _image_bytes(fmt: str = "PNG", size=(10, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (10, 120, 200)).save(buf, format=fmt)
    return buf.getvalue()


def _task(row_number: int = 1) -> RowTask:
    return RowTask(
        row_job_id=row_number,
        row_number=row_number,
        trigger_text="Product: Mug, Theme: Autumn",
        row_data={"Product": "Mug", "Theme": "Autumn"},
    )


def _assistant(text: str = '{"prompt": "A mug on a desk【3:1†brand.pdf】"}') -> MagicMock:
    assistant = MagicMock()
    assistant.generate = AsyncMock(
        return_value=AssistantReply(text=text, thread_id="thread_9", run_id="run_9", assistant_id="asst_x")
    )
    return assistant


def _images(image: bytes | None = None, edit: EditResult | Exception | None = None) -> MagicMock:
    images = MagicMock()
    images.model = "imagen-test"
    images.generate = AsyncMock(return_value=[image or _image_bytes()])
    if isinstance(edit, Exception):
        images.edit = AsyncMock(side_effect=edit)
    else:
        images.edit = AsyncMock(return_value=edit or EditResult(image_bytes=_image_bytes()))
    return images


def _pipeline(tmp_path, assistant=None, images=None, **kwargs) -> RowPipeline:
    return RowPipeline(
        assistant or _assistant(),
        images or _images(),
        assistant_id="asst_x",
        storage=StorageService(base_path=str(tmp_path)),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_success_builds_clean_prompt_and_stores_original(tmp_path):
    """The assistant reply is cleaned, suffixed and the image stored per row."""
    images = _images()
    pipeline = _pipeline(tmp_path, images=images, aspect_ratio="16:9")

    outcome = await pipeline.run("batch-1", _task(3))

    assert outcome.status == ROW_STATUS_SUCCESS
    assert outcome.image_prompt == "A mug on a desk" + NO_TEXT_SUFFIX
    assert "【" not in outcome.generated_content
    assert json.loads(outcome.generated_content) == {"prompt": "A mug on a desk"}
    assert outcome.image_url == "/api/files/generated-images/bulk/batch-1/original_2.png"
    assert outcome.white_background_url is None
    assert (tmp_path / "generated-images" / "bulk" / "batch-1" / "original_2.png").exists()
    assert images.generate.call_args.kwargs["aspect_ratio"] == "16:9"
    images.edit.assert_not_awaited()
    assert outcome.metadata["threadId"] == "thread_9"
    assert outcome.metadata["aspectRatio"] == "16:9"
    assert (outcome.metadata["width"], outcome.metadata["height"]) == (10, 8)
    assert outcome.metadata["hasWhiteBackgroundImage"] is False


@pytest.mark.asyncio
async def test_plain_text_reply_is_used_as_prompt(tmp_path):
    """A non-JSON reply becomes the prompt verbatim (plus suffix)."""
    pipeline = _pipeline(tmp_path, assistant=_assistant("Sunlit mug on oak"))
    outcome = await pipeline.run("b", _task())
    assert outcome.image_prompt == "Sunlit mug on oak" + NO_TEXT_SUFFIX


@pytest.mark.asyncio
async def test_white_background_variant_is_stored(tmp_path):
    """With the white-background step on, both images are stored."""
    images = _images()
    pipeline = _pipeline(tmp_path, images=images, white_background=True)

    outcome = await pipeline.run("b", _task(1))

    assert outcome.ok
    assert outcome.white_background_url == "/api/files/generated-images/bulk/b/white_0.png"
    assert images.edit.call_args.args[0] == WHITE_BACKGROUND_INSTRUCTION
    assert outcome.metadata["hasWhiteBackgroundImage"] is True


@pytest.mark.asyncio
async def test_white_background_text_only_falls_back_to_original(tmp_path):
    """A text-only edit reply keeps the row successful with the original only."""
    images = _images(edit=EditResult(image_bytes=None, text="I can't do that"))
    outcome = await _pipeline(tmp_path, images=images, white_background=True).run("b", _task())

    assert outcome.ok
    assert outcome.image_url is not None
    assert outcome.white_background_url is None


@pytest.mark.asyncio
async def test_white_background_error_falls_back_to_original(tmp_path):
    """An exception from the edit call does not fail the row."""
    images = _images(edit=RuntimeError("quota"))
    outcome = await _pipeline(tmp_path, images=images, white_background=True).run("b", _task())

    assert outcome.ok
    assert outcome.white_background_url is None


@pytest.mark.asyncio
async def test_image_failure_fails_row_with_row_data(tmp_path):
    """An image-model failure yields a failed outcome carrying the original row values."""
    images = _images()
    images.generate = AsyncMock(side_effect=ImageGenerationError("Failed to generate original image"))

    outcome = await _pipeline(tmp_path, images=images).run("b", _task())

    assert outcome.status == ROW_STATUS_FAILED
    assert outcome.error == "Failed to generate original image"
    assert outcome.metadata["rowData"] == {"Product": "Mug", "Theme": "Autumn"}
    assert outcome.metadata["failedStage"] == "image"


@pytest.mark.asyncio
async def test_non_image_bytes_fail_the_row(tmp_path):
    """Bytes that are not an image are rejected."""
    outcome = await _pipeline(tmp_path, images=_images(image=b"definitely not a png")).run("b", _task())
    assert outcome.status == ROW_STATUS_FAILED
    assert "not an image" in outcome.error


@pytest.mark.asyncio
async def test_jpeg_is_normalised_to_png(tmp_path):
    """Non-PNG image bytes are re-encoded as PNG before storage."""
    pipeline = _pipeline(tmp_path, images=_images(image=_image_bytes("JPEG")))
    outcome = await pipeline.run("b", _task())

    stored = (tmp_path / "generated-images" / "bulk" / "b" / "original_0.png").read_bytes()
    assert outcome.ok
    assert Image.open(io.BytesIO(stored)).format == "PNG"


@pytest.mark.asyncio
async def test_storage_failure_fails_row(tmp_path):
    """A storage error is captured as a failed row at the storage stage."""
    pipeline = _pipeline(tmp_path)
    with patch.object(StorageService, "store_file", side_effect=OSError("disk full")):
        outcome = await pipeline.run("b", _task())

    assert outcome.status == ROW_STATUS_FAILED
    assert outcome.metadata["failedStage"] == "storage"
    assert "disk full" in outcome.error


def test_build_row_pipeline_enables_white_background_for_google_sem():
    """Only google_sem batches get the white-background step."""
    with (
        patch("app.services.row_pipeline.get_assistant_client"),
        patch("app.services.row_pipeline.get_image_generator"),
    ):
        sem = build_row_pipeline("google_sem", "1:1")
        email = build_row_pipeline("email_marketing", "4:3")

    assert sem.white_background is True
    assert email.white_background is False
    assert email.aspect_ratio == "4:3"
    assert sem.assistant_id == "asst_4nGR0L10K8L2NOAJ7IlBksvx"


def test_build_row_pipeline_rejects_unknown_department():
    """An unknown department has no assistant profile."""
    with (
        patch("app.services.row_pipeline.get_assistant_client"),
        patch("app.services.row_pipeline.get_image_generator"),
        pytest.raises(ValueError, match="No assistant configured"),
    ):
        build_row_pipeline("sales", "1:1")
