"""
Webhook payload decoding.

The body is read as raw bytes, decoded explicitly as UTF-8 and only then
parsed as JSON. Decoding after a lossy intermediate conversion is what
corrupts 4-byte sequences (emoji), so nothing here guesses a charset.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from wa_inbox.errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodedPayload:
    text: str
    data: dict


def _declared_charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip().strip('"').lower()
    return None


def decode_payload(raw_body: bytes, content_type: Optional[str] = None) -> DecodedPayload:
    """
    Decode raw webhook bytes into a JSON object.

    Args:
        raw_body: Request body exactly as received
        content_type: Declared Content-Type header, only used for diagnostics

    Raises:
        DecodeError: bytes are not UTF-8, JSON is invalid, or the top-level
            value is not an object
    """
    charset = _declared_charset(content_type)
    if charset is None:
        logger.debug("Content-Type does not declare a charset, decoding as UTF-8")
    elif charset not in ("utf-8", "utf8"):
        logger.warning(f"Content-Type declares charset={charset}, decoding as UTF-8 anyway")

    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"Body is not valid UTF-8: {e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object, got {type(data).__name__}")

    logger.debug(f"Decoded payload: {len(raw_body)} bytes, {len(text)} characters")
    return DecodedPayload(text=text, data=data)
