"""
Pytest configuration and shared fixtures.

Every test gets its own app instance on a fresh SQLite file, with the
outgoing WhatsApp client replaced by an in-memory fake.
"""

import json
import os

# wa_inbox.main builds a module-level app on import; give it a throwaway store
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient

from wa_inbox.config import Settings, get_settings
from wa_inbox.main import create_app
from wa_inbox.utils import compute_signature
from wa_inbox.whatsapp_client import SendResult

get_settings.cache_clear()

APP_SECRET = "test-app-secret"
VERIFY_TOKEN = "test-verify-token"
ADMIN_TOKEN = "test-admin-token"
BUSINESS_NUMBER = "15550001111"


class FakeWhatsAppClient:
    """Records sends instead of calling the Graph API."""

    def __init__(self):
        self.sent = []
        self.message_id = "wamid.OUTGOING1"
        self.error = None
        self.closed = False

    async def send_text(self, to: str, body: str) -> SendResult:
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))
        return SendResult(message_id=self.message_id, recipient=to)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'inbox.db'}",
        LOG_LEVEL="DEBUG",
        WHATSAPP_WEBHOOK_TOKEN=VERIFY_TOKEN,
        WHATSAPP_APP_SECRET=APP_SECRET,
        WHATSAPP_PHONE_NUMBER_ID=BUSINESS_NUMBER,
        ADMIN_API_TOKEN=ADMIN_TOKEN,
    )


@pytest.fixture
def fake_whatsapp() -> FakeWhatsAppClient:
    return FakeWhatsAppClient()


@pytest.fixture
def client(settings, fake_whatsapp):
    """Create test client with fresh database for each test."""
    app = create_app(settings, whatsapp_client=fake_whatsapp)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def drain(client):
    """Block until the ingestion queue has processed everything posted so far."""
    def _drain():
        client.portal.call(client.app.state.pipeline.join)
    return _drain


@pytest.fixture
def post_webhook(client):
    """POST a payload to the webhook, signed with the app secret by default."""
    def _post(payload, secret=APP_SECRET, signed=True, raw=None):
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signed:
            headers["X-Hub-Signature-256"] = compute_signature(body, secret)
        return client.post("/webhooks/whatsapp", content=body, headers=headers)
    return _post


@pytest.fixture
def seed_message(client):
    """Insert a message row directly, bypassing the webhook."""
    from wa_inbox import storage

    def _seed(message_id, from_number, to_number, direction, timestamp, text="hi", message_type="TEXT"):
        with client.app.state.db.session() as session:
            storage.create_message(
                session,
                message_id=message_id,
                from_number=from_number,
                to_number=to_number,
                direction=direction,
                message_type=message_type,
                text=text,
                timestamp=timestamp,
            )
    return _seed


def webhook_payload(messages=None, statuses=None, field="messages", obj="whatsapp_business_account") -> dict:
    """Build a provider delivery with one entry and one change."""
    value = {"messaging_product": "whatsapp", "metadata": {"phone_number_id": BUSINESS_NUMBER}}
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": obj,
        "entry": [{"id": "WABA1", "changes": [{"field": field, "value": value}]}],
    }


def text_message(message_id: str, sender: str, body: str, timestamp: str = "1700000000") -> dict:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


@pytest.fixture
def payloads():
    """Payload builders for provider deliveries."""
    class Builders:
        delivery = staticmethod(webhook_payload)
        text = staticmethod(text_message)
    return Builders
