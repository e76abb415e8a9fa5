"""Google image models: Imagen text-to-image and Gemini image editing.

All calls go through ``client.aio`` so a row pipeline suspends on the
network instead of blocking the event loop.  The ``genai.Client`` is built
by ``make_genai_client`` (or by the caller) and injected.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from google import genai
from google.genai import types

from generapix.errors import ImageGenerationError

logger = logging.getLogger(__name__)

IMAGE_MODEL = "imagen-4.0-generate-preview-06-06"
EDIT_MODEL = "gemini-2.5-flash-image-preview"

SUPPORTED_ASPECT_RATIOS = ("1:1", "3:4", "4:3", "9:16", "16:9")

# Number of prior chat turns folded into a creation prompt
HISTORY_CONTEXT_TURNS = 3

TEXT_ONLY_EDIT_NOTE = (
    "\n\nNote: This edit requires manual implementation or may need to be "
    "processed through an image generation model for the actual visual changes."
)


@dataclass
class EditResult:
    """Outcome of a Gemini image call: an image, a text reply, or both."""

    image_bytes: bytes | None
    text: str = ""

    @property
    def has_image(self) -> bool:
        return self.image_bytes is not None


def make_genai_client(api_key: str, timeout_seconds: float | None = None) -> genai.Client:
    """Build a ``genai.Client``; ``timeout_seconds`` bounds every HTTP call."""
    if not api_key:
        raise ValueError("GEMINI_API_KEY not set")
    http_options = None
    if timeout_seconds:
        # HttpOptions.timeout is expressed in milliseconds
        http_options = types.HttpOptions(timeout=int(timeout_seconds * 1000))
    return genai.Client(api_key=api_key, http_options=http_options)


def _parts_of(response: Any) -> list[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates or candidates[0].content is None:
        return []
    return list(candidates[0].content.parts or [])


def _split_parts(response: Any) -> EditResult:
    """Collect text parts and the first inline image from a generate_content response."""
    text = ""
    image: bytes | None = None
    for part in _parts_of(response):
        if getattr(part, "text", None):
            text += part.text
        elif image is None and part.inline_data is not None and part.inline_data.data:
            image = part.inline_data.data
    return EditResult(image_bytes=image, text=text)


def history_context(prompt: str, history: Iterable[Mapping[str, Any]] = ()) -> str:
    """Prefix ``prompt`` with the last few chat turns, if any."""
    recent = list(history)[-HISTORY_CONTEXT_TURNS:]
    if not recent:
        return prompt
    lines = "\n".join(f"{turn.get('role', 'user')}: {turn.get('content', '')}" for turn in recent)
    return f"Context from conversation:\n{lines}\n\nNew request: {prompt}"


class ImageGenerator:
    """Async facade over the Imagen and Gemini image endpoints."""

    def __init__(
        self,
        client: genai.Client,
        *,
        model: str = IMAGE_MODEL,
        edit_model: str = EDIT_MODEL,
    ) -> None:
        self._client = client
        self.model = model
        self.edit_model = edit_model

    async def generate(self, prompt: str, *, aspect_ratio: str = "1:1", count: int = 1) -> list[bytes]:
        """Generate ``count`` images for ``prompt``.

        Raises:
            ImageGenerationError: The model returned no image bytes.
        """
        response = await self._client.aio.models.generate_images(
            model=self.model,
            prompt=prompt,
            config=types.GenerateImagesConfig(
                number_of_images=count,
                aspect_ratio=aspect_ratio,
            ),
        )
        images = [
            generated.image.image_bytes
            for generated in (response.generated_images or [])
            if generated.image is not None and generated.image.image_bytes
        ]
        if not images:
            raise ImageGenerationError("Failed to generate original image")
        logger.debug("Imagen returned %d image(s) for %d-char prompt", len(images), len(prompt))
        return images

    async def edit(self, instruction: str, image_bytes: bytes, mime_type: str = "image/png") -> EditResult:
        """Apply ``instruction`` to an image; the reply may be text only."""
        response = await self._client.aio.models.generate_content(
            model=self.edit_model,
            contents=[
                types.Part.from_text(text=instruction),
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            ],
        )
        result = _split_parts(response)
        if not result.has_image and result.text:
            result.text += TEXT_ONLY_EDIT_NOTE
        return result

    async def create(self, prompt: str, history: Iterable[Mapping[str, Any]] = ()) -> EditResult:
        """Chat-style image creation with recent conversation turns as context."""
        response = await self._client.aio.models.generate_content(
            model=self.edit_model,
            contents=history_context(prompt, history),
        )
        result = _split_parts(response)
        if not result.text:
            result.text = f'I\'ve created an image based on your description: "{prompt}"'
        return result
