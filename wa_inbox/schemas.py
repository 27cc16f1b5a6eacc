"""
Pydantic schemas for request/response validation.

The admin API speaks camelCase on the wire (messageId, unreadCount, ...);
request models also accept the snake_case field names.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


# =============================================================================
# Webhook / Health / Errors
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned for every webhook delivery."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    message: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")
    error: Optional[str] = Field(None, description="Exception detail (development only)")
    errors: Optional[list] = Field(None, description="Field errors for validation failures")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Messages
# =============================================================================

class MessageResponse(CamelModel):
    """
    A stored message as returned to the admin inbox.
    Maps database fields to API response format.
    """
    id: int
    message_id: str
    from_number: str = Field(..., alias="from", description="Sender phone number")
    to_number: str = Field(..., alias="to", description="Recipient phone number")
    text: Optional[str] = None
    type: str
    direction: str
    status: Optional[str] = None
    media_url: Optional[str] = Field(None, description="Provider media id")
    timestamp: str
    created_at: str

    @classmethod
    def from_row(cls, msg) -> "MessageResponse":
        return cls(
            id=msg.id,
            message_id=msg.message_id,
            from_number=msg.from_number,
            to_number=msg.to_number,
            text=msg.text,
            type=msg.type,
            direction=msg.direction,
            status=msg.status,
            media_url=msg.media_url,
            timestamp=msg.timestamp,
            created_at=msg.created_at,
        )


class SendMessageRequest(CamelModel):
    to: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, max_length=4096, description="Text to send")

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Phone number is required")
        return v


class SendMessageResponse(CamelModel):
    message: str
    whatsapp_message: Optional[MessageResponse] = None
    saved_to_database: bool


# =============================================================================
# Conversations
# =============================================================================

class ConversationResponse(CamelModel):
    """Conversation projection derived from the message log and contact row."""
    phone_number: str
    contact_name: Optional[str] = None
    last_message: str
    last_message_type: str
    last_message_direction: str
    last_message_time: str
    unread_count: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=1)
    is_pinned: bool = False
    last_read_at: Optional[str] = None


class ConversationUpdateRequest(CamelModel):
    is_pinned: Optional[bool] = None
    mark_as_read: Optional[bool] = None


class ReadState(CamelModel):
    is_pinned: bool
    last_read_at: Optional[str] = None


class ConversationUpdateResponse(CamelModel):
    message: str
    contact: ReadState


class ConversationDeleteResponse(CamelModel):
    message: str
    deleted_count: int


class NewConversationRequest(CamelModel):
    phone_number: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, max_length=200)


# =============================================================================
# Contacts
# =============================================================================

def _check_email(v: Optional[str]) -> Optional[str]:
    if v is not None and not _EMAIL.match(v):
        raise ValueError("Invalid email address")
    return v


class ContactCreateRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, description="Phone number is required")
    name: str = Field(..., min_length=1, max_length=200, description="Name is required")
    email: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return _check_email(v)


class ContactUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return _check_email(v)


class ContactResponse(CamelModel):
    id: int
    phone_number: str
    name: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    is_pinned: bool = False
    last_read_at: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, contact) -> "ContactResponse":
        return cls(
            id=contact.id,
            phone_number=contact.phone_number,
            name=contact.name,
            email=contact.email,
            notes=contact.notes,
            is_pinned=bool(contact.is_pinned),
            last_read_at=contact.last_read_at,
            created_at=contact.created_at,
            updated_at=contact.updated_at,
        )


class ContactMutationResponse(CamelModel):
    message: str
    contact: ContactResponse


class MessageOnlyResponse(CamelModel):
    message: str


class CsvImportRequest(CamelModel):
    csv_content: str = Field(..., min_length=1, description="CSV content is required")


class CsvImportResults(CamelModel):
    created: int = 0
    updated: int = 0
    errors: list[str] = Field(default_factory=list)


class CsvImportResponse(CamelModel):
    message: str
    results: CsvImportResults
