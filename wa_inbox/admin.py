"""
Admin inbox routes: conversations, messages and contacts.

Every route requires the admin bearer token. Store-backed routes are plain
`def` handlers (FastAPI runs them in its threadpool); sending is async.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from wa_inbox import contacts, conversations, storage
from wa_inbox.auth import require_admin
from wa_inbox.schemas import (
    ContactCreateRequest,
    ContactMutationResponse,
    ContactResponse,
    ContactUpdateRequest,
    ConversationDeleteResponse,
    ConversationResponse,
    ConversationUpdateRequest,
    ConversationUpdateResponse,
    CsvImportRequest,
    CsvImportResponse,
    ErrorResponse,
    MessageOnlyResponse,
    MessageResponse,
    NewConversationRequest,
    ReadState,
    SendMessageRequest,
    SendMessageResponse,
)
from wa_inbox.storage import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    dependencies=[Depends(require_admin)],
    responses={
        400: {"model": ErrorResponse, "description": "Validation failed"},
        401: {"model": ErrorResponse, "description": "Missing credentials"},
        403: {"model": ErrorResponse, "description": "Not an admin"},
        503: {"model": ErrorResponse, "description": "Database unavailable or schema not applied"},
    },
)

DbSession = Annotated[Session, Depends(get_db)]


# =============================================================================
# Conversations
# =============================================================================

@router.get("/conversations", response_model=list[ConversationResponse], tags=["conversations"])
def list_conversations(db: DbSession) -> list[ConversationResponse]:
    """
    List conversations derived from the message log.

    Pinned conversations first, then by last message time, newest first.
    """
    return conversations.list_conversations(db)


@router.post("/conversations/new", response_model=ContactMutationResponse, status_code=201, tags=["conversations"])
def new_conversation(body: NewConversationRequest, response: Response, db: DbSession) -> ContactMutationResponse:
    contact, created = conversations.start_conversation(db, body.phone_number, body.name)
    if not created:
        response.status_code = status.HTTP_200_OK
        return ContactMutationResponse(message="Contact already exists", contact=ContactResponse.from_row(contact))
    return ContactMutationResponse(message="Conversation started", contact=ContactResponse.from_row(contact))


@router.patch("/conversations/{phone}", response_model=ConversationUpdateResponse, tags=["conversations"])
def update_conversation(phone: str, body: ConversationUpdateRequest, db: DbSession) -> ConversationUpdateResponse:
    """Pin/unpin a conversation and/or mark it as read."""
    contact = conversations.update_conversation(db, phone, body.is_pinned, body.mark_as_read)
    return ConversationUpdateResponse(
        message="Conversation updated",
        contact=ReadState(is_pinned=bool(contact.is_pinned), last_read_at=contact.last_read_at),
    )


@router.delete("/conversations/{phone}", response_model=ConversationDeleteResponse, tags=["conversations"])
def delete_conversation(phone: str, db: DbSession) -> ConversationDeleteResponse:
    deleted = conversations.delete_conversation(db, phone)
    return ConversationDeleteResponse(message="Conversation deleted", deleted_count=deleted)


# =============================================================================
# Messages
# =============================================================================

@router.get("/messages", response_model=list[MessageResponse], tags=["messages"])
def list_messages(
    db: DbSession,
    phone: Annotated[str, Query(min_length=1, description="Counterparty phone number")],
) -> list[MessageResponse]:
    """Every message exchanged with phone, oldest first."""
    rows = conversations.get_conversation_messages(db, phone)
    logger.info(f"GET /messages: {len(rows)} messages for {phone}")
    return [MessageResponse.from_row(row) for row in rows]


@router.post(
    "/messages",
    response_model=SendMessageResponse,
    tags=["messages"],
    responses={500: {"model": ErrorResponse, "description": "Provider send failed"}},
)
async def send_message(body: SendMessageRequest, request: Request) -> SendMessageResponse:
    """
    Send a text message, then store it as OUTGOING.

    A send that succeeds but cannot be stored still returns 200 with
    savedToDatabase false.
    """
    state = request.app.state
    saved = await conversations.send_and_record(
        state.db,
        state.whatsapp_client,
        body.to,
        body.message,
        state.settings.WHATSAPP_PHONE_NUMBER_ID,
    )
    return SendMessageResponse(
        message="Message sent successfully" if saved else "Message sent but not saved to database",
        whatsapp_message=saved,
        saved_to_database=saved is not None,
    )


# =============================================================================
# Contacts
# =============================================================================

@router.get("/contacts", response_model=list[ContactResponse], tags=["contacts"])
def list_contacts(db: DbSession) -> list[ContactResponse]:
    return [ContactResponse.from_row(c) for c in storage.list_contacts(db)]


@router.post("/contacts", response_model=ContactMutationResponse, status_code=201, tags=["contacts"])
def create_contact(body: ContactCreateRequest, db: DbSession) -> ContactMutationResponse:
    contact = contacts.add_contact(db, body.phone_number, body.name, body.email, body.notes)
    return ContactMutationResponse(message="Contact created", contact=ContactResponse.from_row(contact))


@router.post("/contacts/import-csv", response_model=CsvImportResponse, tags=["contacts"])
def import_csv(body: CsvImportRequest, db: DbSession) -> CsvImportResponse:
    """Import `phone,name[,email[,notes]]` rows, updating existing contacts."""
    results = contacts.import_contacts(db, body.csv_content)
    return CsvImportResponse(message="CSV import completed", results=results)


@router.get(
    "/contacts/{phone}",
    response_model=ContactResponse,
    tags=["contacts"],
    responses={404: {"model": ErrorResponse}},
)
def get_contact(phone: str, db: DbSession) -> ContactResponse:
    return ContactResponse.from_row(contacts.require_contact(db, phone))


@router.patch(
    "/contacts/{phone}",
    response_model=ContactMutationResponse,
    tags=["contacts"],
    responses={404: {"model": ErrorResponse}},
)
def update_contact(phone: str, body: ContactUpdateRequest, db: DbSession) -> ContactMutationResponse:
    contact = contacts.edit_contact(db, phone, name=body.name, email=body.email, notes=body.notes)
    return ContactMutationResponse(message="Contact updated", contact=ContactResponse.from_row(contact))


@router.delete(
    "/contacts/{phone}",
    response_model=MessageOnlyResponse,
    tags=["contacts"],
    responses={404: {"model": ErrorResponse}},
)
def delete_contact(phone: str, db: DbSession) -> MessageOnlyResponse:
    contacts.remove_contact(db, phone)
    return MessageOnlyResponse(message="Contact deleted")
