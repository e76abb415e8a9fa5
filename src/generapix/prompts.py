"""Prompt assembly for the row pipeline.

The assistant answers with either a JSON object carrying a ``prompt`` field
or with free text.  Both shapes end up as a single Imagen prompt with the
no-text suffix appended.
"""

import json

from generapix.reference_cleaner import remove_reference_markers

NO_TEXT_SUFFIX = ". There should be no text on the product."

# Structured edit instruction for the catalog-style (Google Ads) variant.
WHITE_BACKGROUND_INSTRUCTION = json.dumps(
    {
        "task": "Convert product photo into a Google Ads–ready image",
        "requirements": {
            "preprocessing": {
                "zoom": "Zoom in on the product",
                "crop": "Crop the image to the exact dimensions of the product",
            },
            "background": {
                "color": "#FFFFFF",
                "description": "Pure white, completely clean and distraction-free",
            },
            "focus": {
                "subject": "Product must be the sole subject",
                "frame_coverage": "More than 90% of the frame",
            },
            "framing": {
                "whitespace": "Minimize all whitespace",
                "position": "Product should nearly touch the edges of the frame while staying centered",
            },
            "angle": "Top-down view, making the product the primary focus",
            "dimensions": {
                "aspect_ratio": "Same as original source image",
                "size": "Keep exact dimensions of original image",
            },
            "text": "Remove any marketing or campaign text",
            "style": (
                "Clean, sharp, and studio-like, similar to professional "
                "Google Shopping or Ads catalog images"
            ),
        },
    },
    indent=2,
    ensure_ascii=False,
)


def extract_image_prompt(cleaned_text: str) -> str:
    """Pull the image prompt out of a cleaned assistant reply.

    A JSON object with a string ``prompt`` yields that field; anything else
    (invalid JSON, arrays, objects without ``prompt``) yields the whole text.
    The result is cleaned again because an escaped nested field can still
    carry markers.
    """
    prompt = cleaned_text
    try:
        data = json.loads(cleaned_text)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("prompt"), str):
        prompt = data["prompt"]
    return remove_reference_markers(prompt).strip()


def build_image_prompt(cleaned_text: str) -> str:
    """Final Imagen prompt: extracted prompt plus the no-text instruction."""
    return f"{extract_image_prompt(cleaned_text)}{NO_TEXT_SUFFIX}"
