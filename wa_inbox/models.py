"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are fixed-width ISO-8601 UTC strings (see utils.format_ts).
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

from wa_inbox.storage import Base


class Message(Base):
    """
    One row per inbound or outgoing WhatsApp message.

    Table: whatsapp_messages
    Unique: message_id (provider id, duplicate deliveries are dropped)
    """
    __tablename__ = "whatsapp_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True, index=True)
    from_number = Column(String, nullable=False, index=True)
    to_number = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=True)
    type = Column(String(16), nullable=False, default="TEXT")
    direction = Column(String(16), nullable=False)  # INCOMING | OUTGOING
    status = Column(String(16), nullable=True)  # SENT, DELIVERED, READ, FAILED...
    media_url = Column(String, nullable=True)  # provider media id, not a URL
    timestamp = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)

    def __repr__(self):
        return f"<Message {self.message_id} {self.direction} {self.from_number}->{self.to_number}>"


class Contact(Base):
    """
    Admin-managed metadata and read state for a counterparty.

    Table: whatsapp_contacts
    Unique: phone_number (canonical '+' form)
    """
    __tablename__ = "whatsapp_contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)
    email = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    is_pinned = Column(Boolean, nullable=False, default=False)
    last_read_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    def __repr__(self):
        return f"<Contact {self.name or self.phone_number}>"
