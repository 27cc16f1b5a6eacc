"""
Conversation views over the flat message log.

There is no conversation table: a conversation is the group of messages
sharing a counterparty, joined with that counterparty's contact row for the
display name, pin flag and read cursor.
"""

import asyncio
import logging
import time
import uuid
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from wa_inbox import storage
from wa_inbox.errors import SendError
from wa_inbox.metrics import record_send
from wa_inbox.schemas import ConversationResponse, MessageResponse
from wa_inbox.storage import Database
from wa_inbox.utils import canonicalize_phone, utc_now_ts

logger = logging.getLogger(__name__)

INCOMING = "INCOMING"
OUTGOING = "OUTGOING"
MEDIA_PLACEHOLDER = "Media message"


def counterparty_of(message) -> str:
    """The external number of a message: sender if incoming, recipient otherwise."""
    raw = message.from_number if message.direction == INCOMING else message.to_number
    return canonicalize_phone(raw)


def count_unread(messages: Iterable, last_read_at: Optional[str]) -> int:
    """Incoming messages strictly newer than the read cursor; all of them without one."""
    incoming = [m for m in messages if m.direction == INCOMING]
    if not last_read_at:
        return len(incoming)
    return sum(1 for m in incoming if m.timestamp > last_read_at)


def build_conversations(messages: Iterable, contacts: Iterable) -> list[ConversationResponse]:
    """
    Group messages by counterparty and project each group to a conversation.

    Pinned conversations come first; each tier is ordered by the time of its
    last message, newest first.
    """
    groups: dict[str, list] = {}
    for msg in messages:
        groups.setdefault(counterparty_of(msg), []).append(msg)

    contact_map = {contact.phone_number: contact for contact in contacts}

    conversations = []
    for phone, group in groups.items():
        last = max(group, key=lambda m: (m.timestamp, m.id or 0))
        contact = contact_map.get(phone)
        last_read_at = contact.last_read_at if contact is not None else None

        conversations.append(ConversationResponse(
            phone_number=phone,
            contact_name=(contact.name or None) if contact is not None else None,
            last_message=last.text or MEDIA_PLACEHOLDER,
            last_message_type=last.type,
            last_message_direction=last.direction,
            last_message_time=last.timestamp,
            unread_count=count_unread(group, last_read_at),
            total_messages=len(group),
            is_pinned=bool(contact.is_pinned) if contact is not None else False,
            last_read_at=last_read_at,
        ))

    # Two stable passes: recency, then pinned tier
    conversations.sort(key=lambda c: c.last_message_time, reverse=True)
    conversations.sort(key=lambda c: not c.is_pinned)
    return conversations


# =============================================================================
# Read path
# =============================================================================

def list_conversations(db: Session) -> list[ConversationResponse]:
    messages = storage.list_all_messages(db)
    phones = {counterparty_of(msg) for msg in messages}
    contacts = storage.get_contacts_by_phones(db, phones)
    conversations = build_conversations(messages, contacts)
    logger.info(f"Built {len(conversations)} conversations from {len(messages)} messages")
    return conversations


def get_conversation_messages(db: Session, phone: str) -> list:
    return storage.get_messages_for_phone(db, canonicalize_phone(phone))


# =============================================================================
# Mutations
# =============================================================================

def update_conversation(
    db: Session,
    phone: str,
    is_pinned: Optional[bool] = None,
    mark_as_read: Optional[bool] = None,
):
    """Pin/unpin and/or move the read cursor to now, creating the contact if absent."""
    phone = canonicalize_phone(phone)
    fields = {}
    if is_pinned is not None:
        fields["is_pinned"] = is_pinned
    if mark_as_read:
        fields["last_read_at"] = utc_now_ts()

    contact, created = storage.upsert_contact(db, phone, defaults={"name": phone}, **fields)
    logger.info(f"Conversation {phone} updated ({'created contact' if created else 'existing contact'}): {fields}")
    return contact


def delete_conversation(db: Session, phone: str) -> int:
    """Delete every message exchanged with phone. Contact rows are kept."""
    return storage.delete_messages_for_phone(db, canonicalize_phone(phone))


def start_conversation(db: Session, phone: str, name: Optional[str] = None) -> Tuple[object, bool]:
    """
    Create the contact row for a new conversation.

    Returns:
        Tuple of (contact, created); an existing contact is returned untouched
    """
    phone = canonicalize_phone(phone)
    existing = storage.get_contact(db, phone)
    if existing is not None:
        return existing, False
    return storage.create_contact(db, phone_number=phone, name=name or phone), True


# =============================================================================
# Outgoing messages
# =============================================================================

def _store_outgoing(database: Database, record: dict) -> Optional[MessageResponse]:
    with database.session() as session:
        message, is_duplicate = storage.create_message(session, **record)
        if is_duplicate:
            logger.warning(f"Outgoing message id {record['message_id']} already stored")
            return None
        return MessageResponse.from_row(message)


async def send_and_record(
    database: Database,
    client,
    to: str,
    text: str,
    business_number: str,
) -> Optional[MessageResponse]:
    """
    Send through the provider, then record the OUTGOING row.

    Raises:
        SendError: provider send failed; nothing is stored

    Returns:
        The stored message, or None when the send succeeded but storing it
        failed (provider delivery is authoritative)
    """
    counterparty = canonicalize_phone(to)

    try:
        result = await client.send_text(counterparty, text)
    except SendError:
        record_send("failed")
        raise
    record_send("sent")

    message_id = result.message_id or f"outgoing_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
    record = {
        "message_id": message_id,
        "from_number": business_number,
        "to_number": counterparty,
        "direction": OUTGOING,
        "message_type": "TEXT",
        "text": text,
        "status": "SENT",
        "timestamp": utc_now_ts(),
    }

    try:
        return await asyncio.to_thread(_store_outgoing, database, record)
    except Exception as e:
        logger.error(f"Message {message_id} sent but not saved to database: {e}")
        return None
