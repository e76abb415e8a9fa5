"""Factories for the vendor AI clients.

Clients are built lazily from settings on first use (never at import time)
and handed to the pipeline and the image endpoints as parameters.
"""

import logging

from openai import AsyncOpenAI

from app.config import settings
from app.models.batch import (
    DEPARTMENT_EMAIL_MARKETING,
    DEPARTMENT_GOOGLE_SEM,
    DEPARTMENT_GROUPON,
)
from generapix.assistant import AssistantClient
from generapix.image_generator import ImageGenerator, make_genai_client

logger = logging.getLogger(__name__)

_assistant_client: AssistantClient | None = None
_image_generator: ImageGenerator | None = None


def assistant_id_for(department: str) -> str:
    """Assistant profile used to write prompts for ``department``."""
    mapping = {
        DEPARTMENT_EMAIL_MARKETING: settings.assistant_id_email_marketing,
        DEPARTMENT_GOOGLE_SEM: settings.assistant_id_google_sem,
        DEPARTMENT_GROUPON: settings.assistant_id_groupon,
    }
    try:
        return mapping[department]
    except KeyError:
        raise ValueError(f"No assistant configured for department {department!r}") from None


def get_assistant_client() -> AssistantClient:
    """Lazy-init the OpenAI Assistants wrapper (auto-retries on 429/5xx)."""
    global _assistant_client
    if _assistant_client is None:
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not set")
        client = AsyncOpenAI(api_key=settings.openai_api_key, max_retries=3)
        _assistant_client = AssistantClient(
            client,
            max_polls=settings.text_poll_max_attempts,
            poll_interval=settings.text_poll_interval_seconds,
        )
        logger.info("OpenAI assistant client initialised")
    return _assistant_client


def get_image_generator() -> ImageGenerator:
    """Lazy-init the Imagen / Gemini wrapper."""
    global _image_generator
    if _image_generator is None:
        client = make_genai_client(
            settings.gemini_api_key,
            timeout_seconds=settings.ai_request_timeout_seconds or None,
        )
        _image_generator = ImageGenerator(
            client,
            model=settings.image_model,
            edit_model=settings.image_edit_model,
        )
        logger.info("Gemini image client initialised (model=%s)", settings.image_model)
    return _image_generator
