"""
Normalization of WhatsApp Cloud API message objects.

The provider schema is externally controlled, so every kind is decoded
through the same null-safe accessors: a missing or wrong-typed nested
object degrades to the kind's fallback text and never raises.

Kinds are matched through a dispatch table keyed by MessageKind; anything
the table does not know becomes the UNKNOWN variant with text "[TYPE]".
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    STICKER = "STICKER"
    REACTION = "REACTION"
    INTERACTIVE = "INTERACTIVE"
    LOCATION = "LOCATION"
    CONTACTS = "CONTACTS"
    SYSTEM = "SYSTEM"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_provider(cls, raw_type: str) -> "MessageKind":
        try:
            return cls(raw_type.upper())
        except ValueError:
            return cls.UNKNOWN


# =============================================================================
# Normalized record
# =============================================================================

class ReplyContext(BaseModel):
    from_number: Optional[str] = Field(None, alias="from")
    id: Optional[str] = None

    model_config = {"populate_by_name": True}


class ButtonReply(BaseModel):
    id: str = ""
    title: str = ""


class ListReply(BaseModel):
    id: str = ""
    title: str = ""
    description: Optional[str] = None


class InteractiveReply(BaseModel):
    type: str
    button_reply: Optional[ButtonReply] = None
    list_reply: Optional[ListReply] = None


class Reaction(BaseModel):
    # Provider id of the message reacted to; may not exist locally
    message_id: str = ""
    emoji: str = ""


class NormalizedMessage(BaseModel):
    text: str = ""
    media_url: Optional[str] = None
    message_type: MessageKind = MessageKind.UNKNOWN
    raw_type: str = "unknown"
    context: Optional[ReplyContext] = None
    interactive: Optional[InteractiveReply] = None
    reaction: Optional[Reaction] = None


# =============================================================================
# Null-safe accessors
# =============================================================================

def _obj(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    """Scalar to str; None for absent values and nested objects."""
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _media_id(value: Any) -> Optional[str]:
    return _text(_obj(value).get("id")) or None


# =============================================================================
# Per-kind extractors
# =============================================================================

def _extract_text(message: dict, raw_type: str) -> dict:
    return {"text": _text(_obj(message.get("text")).get("body")) or ""}


def _extract_image(message: dict, raw_type: str) -> dict:
    image = message.get("image")
    # No placeholder for images: an image without caption has empty text
    return {"text": _text(_obj(image).get("caption")) or "", "media_url": _media_id(image)}


def _extract_video(message: dict, raw_type: str) -> dict:
    video = message.get("video")
    caption = _text(_obj(video).get("caption"))
    return {
        "text": caption if caption is not None else "Video message",
        "media_url": _media_id(video),
    }


def _extract_document(message: dict, raw_type: str) -> dict:
    document = _obj(message.get("document"))
    caption = _text(document.get("caption"))
    if caption is None:
        caption = _text(document.get("filename"))
    return {"text": caption or "", "media_url": _media_id(document)}


def _extract_audio(message: dict, raw_type: str) -> dict:
    return {"text": "Audio message", "media_url": _media_id(message.get("audio"))}


def _extract_sticker(message: dict, raw_type: str) -> dict:
    return {"text": "Sticker", "media_url": _media_id(message.get("sticker"))}


def _extract_reaction(message: dict, raw_type: str) -> dict:
    reaction = message.get("reaction")
    if not isinstance(reaction, dict):
        return {"text": "Reaction"}

    emoji = _text(reaction.get("emoji"))
    return {
        "text": emoji or "Reaction",
        "reaction": Reaction(
            message_id=_text(reaction.get("message_id")) or "",
            emoji=emoji or "",
        ),
    }


def _extract_interactive(message: dict, raw_type: str) -> dict:
    interactive = message.get("interactive")
    if not isinstance(interactive, dict):
        return {"text": "Interactive message"}

    interactive_type = (_text(interactive.get("type")) or "").lower()

    if interactive_type == "button_reply":
        reply = _obj(interactive.get("button_reply"))
        title = _text(reply.get("title"))
        return {
            "text": title or "Button reply",
            "interactive": InteractiveReply(
                type=interactive_type,
                button_reply=ButtonReply(id=_text(reply.get("id")) or "", title=title or ""),
            ),
        }

    if interactive_type == "list_reply":
        reply = _obj(interactive.get("list_reply"))
        title = _text(reply.get("title"))
        description = _text(reply.get("description"))
        text = title or "List reply"
        if description:
            text += f": {description}"
        return {
            "text": text,
            "interactive": InteractiveReply(
                type=interactive_type,
                list_reply=ListReply(
                    id=_text(reply.get("id")) or "",
                    title=title or "",
                    description=description or None,
                ),
            ),
        }

    return {"text": f"Interactive: {interactive_type}"}


def _extract_location(message: dict, raw_type: str) -> dict:
    location = _obj(message.get("location"))
    name = _text(location.get("name"))
    address = _text(location.get("address"))
    latitude = _text(location.get("latitude"))
    longitude = _text(location.get("longitude"))

    if name:
        text = name
    elif address:
        text = address
    elif latitude is not None and longitude is not None:
        text = f"Location: {latitude}, {longitude}"
    else:
        text = "Location"
    return {"text": text}


def _extract_contacts(message: dict, raw_type: str) -> dict:
    return {"text": "Contact"}


def _extract_system(message: dict, raw_type: str) -> dict:
    return {"text": _text(_obj(message.get("system")).get("body")) or "System message"}


def _extract_unrecognized(message: dict, raw_type: str) -> dict:
    logger.warning(f"Unrecognized message type: {raw_type}")
    return {"text": f"[{raw_type.upper()}]"}


_EXTRACTORS: dict[MessageKind, Callable[[dict, str], dict]] = {
    MessageKind.TEXT: _extract_text,
    MessageKind.IMAGE: _extract_image,
    MessageKind.DOCUMENT: _extract_document,
    MessageKind.AUDIO: _extract_audio,
    MessageKind.VIDEO: _extract_video,
    MessageKind.STICKER: _extract_sticker,
    MessageKind.REACTION: _extract_reaction,
    MessageKind.INTERACTIVE: _extract_interactive,
    MessageKind.LOCATION: _extract_location,
    MessageKind.CONTACTS: _extract_contacts,
    MessageKind.SYSTEM: _extract_system,
    MessageKind.UNKNOWN: _extract_unrecognized,
}


def _extract_context(message: dict) -> Optional[ReplyContext]:
    context = message.get("context")
    if not isinstance(context, dict):
        return None
    return ReplyContext(
        from_number=_text(context.get("from")) or None,
        id=_text(context.get("id")) or None,
    )


def extract_message(message: Any) -> NormalizedMessage:
    """
    Normalize one element of a webhook value.messages[] array.

    Never raises: unknown kinds and malformed objects produce best-effort
    text so the message can still be stored.
    """
    if not isinstance(message, dict):
        logger.warning(f"Message is not an object: {type(message).__name__}")
        return NormalizedMessage()

    raw_type = (_text(message.get("type")) or "text").lower()
    kind = MessageKind.from_provider(raw_type)

    try:
        fields = _EXTRACTORS[kind](message, raw_type)
        context = _extract_context(message)
    except Exception:
        logger.exception(f"Extraction failed for message type {raw_type}")
        return NormalizedMessage(text=f"[{raw_type.upper()}]", raw_type=raw_type)

    return NormalizedMessage(message_type=kind, raw_type=raw_type, context=context, **fields)
