"""Strip file-search citation markers from assistant output.

Assistants backed by a vector store annotate their answers with markers such
as ``【4:0†brand_guide.pdf】``.  They must never reach the user or the image
model, so every assistant reply goes through ``remove_reference_markers``.
"""

import logging
import re

logger = logging.getLogger(__name__)

# 【<digits>:<digits>†<anything but 】>】
REFERENCE_MARKER = re.compile(r"【\d+:\d+†[^】]*】")


def remove_reference_markers(text: str | None) -> str:
    """Remove every citation marker and trim the result.

    Text without markers is returned as-is.  Substitution repeats until no
    marker is left, since removing one can splice the halves of another
    together (``【1:【2:3†x】4†y】``); this keeps the function idempotent.
    """
    if not isinstance(text, str) or not text:
        return ""

    markers = REFERENCE_MARKER.findall(text)
    if not markers:
        return text

    logger.debug("Removing %d reference markers: %s", len(markers), markers)
    cleaned = text
    while REFERENCE_MARKER.search(cleaned):
        cleaned = REFERENCE_MARKER.sub("", cleaned)
    return cleaned.strip()

