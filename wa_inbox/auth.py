"""
Admin access check for the inbox API.

Who the admin is and how the token is issued is outside this service; it
only compares the bearer token with ADMIN_API_TOKEN.
"""

import hashlib
import logging
import secrets
from typing import Annotated, Optional

from fastapi import Header, Request

from wa_inbox.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)


def token_fingerprint(token: str) -> str:
    """Short hash of a token for logs; the raw token is never logged."""
    return hashlib.sha256(token.encode()).hexdigest()[:8]


def require_admin(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """
    Dependency guarding every admin route.

    Raises:
        AuthError: no bearer credentials (401)
        ForbiddenError: credentials present but not the admin's (403)
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        logger.warning(f"Admin request without credentials: {request.method} {request.url.path}")
        raise AuthError("Unauthorized")

    expected = request.app.state.settings.ADMIN_API_TOKEN
    token = token.strip()
    if not expected or not secrets.compare_digest(token.encode(), expected.encode()):
        logger.warning(f"Admin request with rejected token {token_fingerprint(token)}")
        raise ForbiddenError("Forbidden - Admin access required")
