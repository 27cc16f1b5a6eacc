"""
Error types for the inbox service.

Pipeline-only errors (DecodeError, SignatureError) never reach an HTTP
response: the webhook has already been acknowledged when they are raised.
Everything else carries the status code and error code used by the
exception handler in main.py.
"""


class InboxError(Exception):
    """Base error with an HTTP mapping."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class DecodeError(InboxError):
    """Webhook body is not valid UTF-8 or not a JSON object."""

    status_code = 400
    code = "DECODE_ERROR"


class SignatureError(InboxError):
    """x-hub-signature-256 does not match the body."""

    status_code = 401
    code = "INVALID_SIGNATURE"


class PersistenceError(InboxError):
    """Store failure other than connectivity or a missing schema."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class StoreUnavailableError(PersistenceError):
    status_code = 503
    code = "DATABASE_CONNECTION_ERROR"


class SchemaNotReadyError(PersistenceError):
    """A required table does not exist yet (migrations not applied)."""

    status_code = 503
    code = "SCHEMA_NOT_READY"


class BadRequestError(InboxError):
    """Request passed schema validation but cannot be applied."""

    status_code = 400
    code = "BAD_REQUEST"


class NotFoundError(InboxError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(InboxError):
    status_code = 409
    code = "CONFLICT"


class AuthError(InboxError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class SendError(InboxError):
    """Provider refused or failed an outgoing send."""

    status_code = 500
    code = "SEND_FAILED"

    def __init__(self, message: str, error_code: int | None = None, error_subcode: int | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.error_subcode = error_subcode
