"""
Utility functions for the inbox service.
"""

import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# Phone numbers
# =============================================================================

def canonicalize_phone(raw: str) -> str:
    """
    Return the canonical store key for a phone number.

    Strips all whitespace and ensures a leading '+'. Path and query values
    arrive already URL-decoded by the framework.
    Every write of a counterparty number goes through this function, so
    reads only ever need to match the canonical form.
    """
    phone = _WHITESPACE.sub("", raw or "")
    if phone and not phone.startswith("+"):
        phone = f"+{phone}"
    return phone


# =============================================================================
# Timestamps
# =============================================================================

def format_ts(dt: datetime) -> str:
    """
    Format a datetime as fixed-width ISO-8601 UTC with millisecond precision.

    Fixed width keeps lexicographic and chronological order identical,
    which the store relies on for ORDER BY and read-cursor comparisons.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def utc_now_ts() -> str:
    return format_ts(datetime.now(timezone.utc))


def epoch_to_ts(value: Any) -> Optional[str]:
    """Convert provider epoch seconds (string or number) to an ISO timestamp."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(str(value).strip())
        return format_ts(datetime.fromtimestamp(int(seconds), tz=timezone.utc))
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Unparseable provider timestamp: {value!r}")
        return None


# =============================================================================
# Webhook signatures
# =============================================================================

def compute_signature(body: bytes, secret: str) -> str:
    """Return the x-hub-signature-256 value for body: 'sha256=<hex>'."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify an x-hub-signature-256 header against the raw request body.

    Args:
        body: Raw request body bytes, before any JSON parsing
        signature: Header value, formatted as 'sha256=<hex>'
        secret: WhatsApp app secret

    Returns:
        True if signature is valid, False otherwise (never raises)
    """
    if not secret:
        return False

    try:
        expected_signature = compute_signature(body, secret)
        # Use constant-time comparison to prevent timing attacks
        is_valid = hmac.compare_digest(expected_signature, signature)
    except Exception as e:
        logger.error(f"Signature verification error: {e}")
        return False

    logger.debug(f"Signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
