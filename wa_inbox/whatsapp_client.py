"""
WhatsApp Cloud API client for outgoing messages.

Only text sends are implemented; media download and templates belong to
other services.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from wa_inbox.config import Settings
from wa_inbox.errors import SendError

logger = logging.getLogger(__name__)

_NON_DIALABLE = re.compile(r"[^\d+]")

# Graph API error codes with an actionable explanation
_ERROR_HINTS = {
    190: "Invalid access token. Please check WHATSAPP_ACCESS_TOKEN; temporary tokens expire after 24 hours.",
    100: "Invalid parameter. Please check WHATSAPP_PHONE_NUMBER_ID and the recipient phone number format.",
    10: "Permission denied. The access token lacks the 'whatsapp_business_messaging' permission.",
    131047: "Message outside 24-hour window. The recipient must message the business first, or a pre-approved template must be used.",
}


@dataclass(frozen=True)
class SendResult:
    message_id: Optional[str]
    recipient: str


def clean_access_token(token: str) -> str:
    """Strip whitespace and one pair of wrapping quotes from a pasted token."""
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        token = token[1:-1]
    return token.strip()


def format_recipient(phone: str) -> str:
    phone = _NON_DIALABLE.sub("", phone)
    return phone if phone.startswith("+") else f"+{phone}"


class WhatsAppClient:
    """
    Sends messages through the Graph API /{phone-number-id}/messages endpoint.

    The underlying httpx.AsyncClient is created by the app lifespan and
    closed with aclose().
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.phone_number_id = settings.WHATSAPP_PHONE_NUMBER_ID
        self.access_token = clean_access_token(settings.WHATSAPP_ACCESS_TOKEN)
        self.base_url = f"{settings.WHATSAPP_API_BASE_URL.rstrip('/')}/{settings.WHATSAPP_API_VERSION}"
        self._http = http_client or httpx.AsyncClient(timeout=settings.WHATSAPP_SEND_TIMEOUT)

    @property
    def configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send_text(self, to: str, body: str) -> SendResult:
        """
        Send a text message.

        Raises:
            SendError: credentials missing, transport failure or provider error
        """
        if not self.configured:
            raise SendError(
                "WhatsApp credentials not configured. Please set WHATSAPP_PHONE_NUMBER_ID "
                "and WHATSAPP_ACCESS_TOKEN."
            )

        recipient = format_recipient(to)
        payload = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": body},
        }
        url = f"{self.base_url}/{self.phone_number_id}/messages"

        try:
            response = await self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp send transport error: {e}")
            raise SendError(f"Failed to send WhatsApp message: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            error = error if isinstance(error, dict) else {}
            code = error.get("code")
            subcode = error.get("error_subcode")
            logger.error(f"WhatsApp API error: status={response.status_code} code={code} subcode={subcode}")

            hint = _ERROR_HINTS.get(code)
            if hint is None and subcode == 131047:
                hint = _ERROR_HINTS[131047]
            raise SendError(
                hint or error.get("message") or "Failed to send WhatsApp message",
                error_code=code,
                error_subcode=subcode,
            )

        messages = data.get("messages") if isinstance(data, dict) else None
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")

        logger.info(f"WhatsApp message sent to {recipient}: {message_id}")
        return SendResult(message_id=message_id, recipient=recipient)
