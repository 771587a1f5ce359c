"""Document text preparation before extraction prompts.

Uploaded documents usually reach the service as base64-encoded markdown
(converted client-side on upload). Steps:
1. Decode base64 content when no plain text was sent
2. Decode UTF-8, falling back to Latin-1 for legacy files
3. Normalize line endings and drop NUL bytes

Each step degrades gracefully; if decoding fails the document keeps its text.
"""

import base64
import binascii
import logging

from models import Document

logger = logging.getLogger(__name__)


def prepare_document(document: Document) -> Document:
    """Return the document with ``text`` filled from ``content`` and normalized."""
    text = document.text
    if not text and document.content:
        text = decode_base64_text(document.content)
    return document.model_copy(update={"text": normalize_text(text), "content": None})


def decode_base64_text(content: str) -> str:
    """Decode base64 document content to text. Returns "" if it is not base64."""
    try:
        raw = base64.b64decode("".join(content.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning("preprocessing: could not decode base64 content: %s", e)
        return ""

    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("preprocessing: document is not valid UTF-8, decoding as Latin-1")
        return raw.decode("latin-1")


def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
