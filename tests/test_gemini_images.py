"""Tests for the Imagen / Gemini image wrapper."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from generapix.errors import ImageGenerationError
from generapix.image_generator import (
    TEXT_ONLY_EDIT_NOTE,
    ImageGenerator,
    history_context,
    make_genai_client,
)


def _content_response(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


def _text_part(text: str):
    return SimpleNamespace(text=text, inline_data=None)


def _image_part(data: bytes):
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type="image/png"))


def _generator(client: MagicMock) -> ImageGenerator:
    return ImageGenerator(client, model="imagen-test", edit_model="gemini-test")


@pytest.mark.asyncio
async def test_generate_passes_aspect_ratio_and_returns_bytes():
    """generate() requests the configured aspect ratio and returns image bytes."""
    client = MagicMock()
    client.aio.models.generate_images = AsyncMock(
        return_value=SimpleNamespace(
            generated_images=[SimpleNamespace(image=SimpleNamespace(image_bytes=b"png-1"))]
        )
    )

    images = await _generator(client).generate("A mug", aspect_ratio="16:9")

    assert images == [b"png-1"]
    kwargs = client.aio.models.generate_images.call_args.kwargs
    assert kwargs["model"] == "imagen-test"
    assert kwargs["prompt"] == "A mug"
    assert kwargs["config"].aspect_ratio == "16:9"
    assert kwargs["config"].number_of_images == 1


@pytest.mark.asyncio
async def test_generate_without_images_raises():
    """An empty Imagen response is an ImageGenerationError."""
    client = MagicMock()
    client.aio.models.generate_images = AsyncMock(return_value=SimpleNamespace(generated_images=[]))

    with pytest.raises(ImageGenerationError, match="Failed to generate original image"):
        await _generator(client).generate("A mug")


@pytest.mark.asyncio
async def test_edit_returns_image_and_text():
    """edit() collects the text parts and the first inline image."""
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(
        return_value=_content_response(_text_part("Done."), _image_part(b"edited"), _image_part(b"second"))
    )

    result = await _generator(client).edit("Make the background white", b"original")

    assert result.has_image
    assert result.image_bytes == b"edited"
    assert result.text == "Done."
    assert client.aio.models.generate_content.call_args.kwargs["model"] == "gemini-test"


@pytest.mark.asyncio
async def test_edit_text_only_reply_gets_note():
    """A text-only edit reply has no image and carries the manual-edit note."""
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(
        return_value=_content_response(_text_part("I cannot edit this."))
    )

    result = await _generator(client).edit("Remove the logo", b"original")

    assert not result.has_image
    assert result.text == "I cannot edit this." + TEXT_ONLY_EDIT_NOTE


@pytest.mark.asyncio
async def test_create_defaults_message_when_model_sends_no_text():
    """create() supplies a default message when only an image comes back."""
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(return_value=_content_response(_image_part(b"img")))

    result = await _generator(client).create("A red bicycle")

    assert result.image_bytes == b"img"
    assert "A red bicycle" in result.text


def test_history_context_uses_last_three_turns():
    """Only the three most recent turns are folded into the prompt."""
    history = [{"role": "user", "content": f"turn {i}"} for i in range(5)]
    prompt = history_context("Now make it blue", history)
    assert "turn 0" not in prompt and "turn 1" not in prompt
    assert "user: turn 4" in prompt
    assert prompt.endswith("New request: Now make it blue")


def test_history_context_without_history_is_prompt():
    """No history means the prompt is used unchanged."""
    assert history_context("Just a cat") == "Just a cat"


def test_make_genai_client_requires_key():
    """An empty API key is rejected before any client is built."""
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        make_genai_client("")
