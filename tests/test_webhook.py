"""
Tests for the /webhooks/whatsapp endpoints.

Tests cover:
- Subscription verification (GET)
- Immediate acknowledgement of deliveries (POST)
- Background ingestion of messages and status updates
- Signature policy, ignored objects and malformed bodies
- Duplicate deliveries
"""

import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from conftest import BUSINESS_NUMBER, VERIFY_TOKEN, text_message, webhook_payload
from wa_inbox.main import create_app


def messages_for(client, admin_headers, phone):
    response = client.get("/messages", params={"phone": phone}, headers=admin_headers)
    assert response.status_code == 200
    return response.json()


class TestWebhookVerification:
    """Test the hub.challenge handshake."""

    def test_valid_token_echoes_challenge(self, client):
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"},
        )
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_wrong_token_forbidden(self, client):
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "x"},
        )
        assert response.status_code == 403

    def test_wrong_mode_forbidden(self, client):
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "x"},
        )
        assert response.status_code == 403

    def test_missing_params_forbidden(self, client):
        assert client.get("/webhooks/whatsapp").status_code == 403

    def test_token_not_configured(self, settings, fake_whatsapp):
        app = create_app(settings.model_copy(update={"WHATSAPP_WEBHOOK_TOKEN": ""}), whatsapp_client=fake_whatsapp)
        with TestClient(app) as unconfigured:
            response = unconfigured.get(
                "/webhooks/whatsapp",
                params={"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "x"},
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Webhook token not configured"}


class TestWebhookAck:
    """Every delivery is acknowledged with 200 before processing."""

    def test_valid_delivery(self, post_webhook):
        response = post_webhook(webhook_payload(messages=[text_message("wamid.1", "15551234567", "hi")]))
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert "X-Request-ID" in response.headers

    @pytest.mark.parametrize("raw", [b"not json", b"\xff\xfe\xfd", b"[1,2]", b""])
    def test_malformed_body_still_acknowledged(self, post_webhook, raw):
        response = post_webhook(None, raw=raw)
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_bad_signature_still_acknowledged(self, post_webhook):
        response = post_webhook(webhook_payload(messages=[]), secret="wrong")
        assert response.status_code == 200

    def test_ack_does_not_wait_for_processing(self, client, post_webhook):
        """Handler returns quickly even when processing is slow."""
        async def slow_process(job):
            await asyncio.sleep(1.0)
            return "processed"

        client.app.state.pipeline.process = slow_process

        start = time.perf_counter()
        response = post_webhook(webhook_payload(messages=[text_message("wamid.slow", "15551234567", "hi")]))
        elapsed = time.perf_counter() - start

        assert response.status_code == 200
        assert elapsed < 0.5


class TestWebhookIngestion:
    """Test what ends up in the store after the queue drains."""

    def test_text_message_round_trip(self, client, post_webhook, drain, admin_headers):
        """Multi-codepoint emoji are stored and returned byte-identical."""
        post_webhook(webhook_payload(messages=[text_message("wamid.A", "15551234567", "Hello 👋🏽")]))
        drain()

        rows = messages_for(client, admin_headers, "+15551234567")
        assert len(rows) == 1
        row = rows[0]
        assert row["text"] == "Hello 👋🏽"
        assert row["text"].encode("utf-8") == "Hello 👋🏽".encode("utf-8")
        assert row["messageId"] == "wamid.A"
        assert row["from"] == "+15551234567"
        assert row["to"] == BUSINESS_NUMBER
        assert row["direction"] == "INCOMING"
        assert row["type"] == "TEXT"
        assert row["timestamp"] == "2023-11-14T22:13:20.000Z"

    def test_unprefixed_phone_query_matches(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(messages=[text_message("wamid.A", "15551234567", "hi")]))
        drain()
        assert len(messages_for(client, admin_headers, "15551234567")) == 1

    def test_reaction_stored_as_emoji(self, client, post_webhook, drain, admin_headers):
        reaction = {
            "from": "15551234567",
            "id": "wamid.R",
            "timestamp": "1700000000",
            "type": "reaction",
            "reaction": {"message_id": "wamid.abc", "emoji": "😂"},
        }
        post_webhook(webhook_payload(messages=[reaction]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["text"] == "😂"
        assert row["type"] == "REACTION"

    def test_list_reply_text(self, client, post_webhook, drain, admin_headers):
        interactive = {
            "from": "15551234567",
            "id": "wamid.L",
            "timestamp": "1700000000",
            "type": "interactive",
            "interactive": {
                "type": "list_reply",
                "list_reply": {"id": "plan_a", "title": "Plan A", "description": "Basic tier"},
            },
        }
        post_webhook(webhook_payload(messages=[interactive]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["text"] == "Plan A: Basic tier"
        assert row["type"] == "INTERACTIVE"

    def test_image_keeps_media_id(self, client, post_webhook, drain, admin_headers):
        image = {
            "from": "15551234567",
            "id": "wamid.I",
            "timestamp": "1700000000",
            "type": "image",
            "image": {"id": "media-123", "mime_type": "image/jpeg"},
        }
        post_webhook(webhook_payload(messages=[image]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["type"] == "IMAGE"
        assert row["mediaUrl"] == "media-123"
        assert row["text"] is None

    def test_unknown_kind_stored(self, client, post_webhook, drain, admin_headers):
        order = {"from": "15551234567", "id": "wamid.O", "timestamp": "1700000000", "type": "order", "order": {}}
        post_webhook(webhook_payload(messages=[order]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["type"] == "UNKNOWN"
        assert row["text"] == "[ORDER]"

    def test_status_updates_apply_in_order(self, client, post_webhook, drain, seed_message, admin_headers):
        seed_message("wamid.xyz", BUSINESS_NUMBER, "+15551234567", "OUTGOING", "2024-01-01T00:00:00.000Z")

        post_webhook(webhook_payload(statuses=[{"id": "wamid.xyz", "status": "delivered"}]))
        drain()
        assert messages_for(client, admin_headers, "+15551234567")[0]["status"] == "DELIVERED"

        post_webhook(webhook_payload(statuses=[{"id": "wamid.xyz", "status": "read"}]))
        drain()
        assert messages_for(client, admin_headers, "+15551234567")[0]["status"] == "READ"

    def test_status_for_unknown_message_is_noop(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(statuses=[{"id": "wamid.missing", "status": "read"}]))
        drain()
        assert client.get("/conversations", headers=admin_headers).json() == []

    def test_duplicate_delivery_stored_once(self, client, post_webhook, drain, admin_headers):
        payload = webhook_payload(messages=[text_message("wamid.D", "15551234567", "once")])
        post_webhook(payload)
        drain()
        post_webhook(payload)
        drain()

        assert len(messages_for(client, admin_headers, "+15551234567")) == 1

    def test_several_messages_in_one_delivery(self, client, post_webhook, drain, admin_headers):
        payload = webhook_payload(messages=[
            text_message("wamid.1", "15551234567", "one"),
            text_message("wamid.2", "15551234567", "two", timestamp="1700000001"),
            text_message("wamid.3", "447700900123", "three"),
        ])
        post_webhook(payload)
        drain()

        assert [r["text"] for r in messages_for(client, admin_headers, "+15551234567")] == ["one", "two"]
        assert len(messages_for(client, admin_headers, "+447700900123")) == 1

    def test_message_without_id_gets_placeholder(self, client, post_webhook, drain, admin_headers):
        message = text_message("", "15551234567", "no id")
        del message["id"]
        post_webhook(webhook_payload(messages=[message]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["messageId"].startswith("incoming_")

    def test_missing_timestamp_uses_receipt_time(self, client, post_webhook, drain, admin_headers):
        message = text_message("wamid.T", "15551234567", "when")
        message["timestamp"] = "garbage"
        post_webhook(webhook_payload(messages=[message]))
        drain()

        row = messages_for(client, admin_headers, "+15551234567")[0]
        assert row["timestamp"] > "2024-01-01T00:00:00.000Z"


class TestWebhookDropped:
    """Deliveries that are acknowledged but must not reach the store."""

    def test_invalid_signature_not_stored(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(messages=[text_message("wamid.S", "15551234567", "forged")]), secret="wrong")
        drain()
        assert messages_for(client, admin_headers, "+15551234567") == []

    def test_unsigned_delivery_is_processed(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(messages=[text_message("wamid.U", "15551234567", "unsigned")]), signed=False)
        drain()
        assert len(messages_for(client, admin_headers, "+15551234567")) == 1

    def test_no_secret_configured_skips_verification(self, settings, fake_whatsapp, admin_headers):
        app = create_app(settings.model_copy(update={"WHATSAPP_APP_SECRET": ""}), whatsapp_client=fake_whatsapp)
        body = json.dumps(webhook_payload(messages=[text_message("wamid.N", "15551234567", "hi")])).encode()
        with TestClient(app) as no_secret:
            no_secret.post(
                "/webhooks/whatsapp",
                content=body,
                headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=" + "0" * 64},
            )
            no_secret.portal.call(app.state.pipeline.join)
            rows = no_secret.get("/messages", params={"phone": "+15551234567"}, headers=admin_headers).json()
        assert len(rows) == 1

    def test_other_object_ignored(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(messages=[text_message("wamid.P", "15551234567", "page")], obj="page"))
        drain()
        assert messages_for(client, admin_headers, "+15551234567") == []

    def test_other_change_field_ignored(self, client, post_webhook, drain, admin_headers):
        post_webhook(webhook_payload(messages=[text_message("wamid.F", "15551234567", "x")], field="account_update"))
        drain()
        assert messages_for(client, admin_headers, "+15551234567") == []

    def test_malformed_delivery_does_not_block_next(self, client, post_webhook, drain, admin_headers):
        post_webhook(None, raw=b'{"object": ')
        post_webhook(webhook_payload(messages=[text_message("wamid.OK", "15551234567", "after")]))
        drain()
        assert len(messages_for(client, admin_headers, "+15551234567")) == 1


class TestHealthAndMetrics:
    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok"}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, settings, fake_whatsapp):
        app = create_app(settings.model_copy(update={"DB_AUTO_CREATE": False}), whatsapp_client=fake_whatsapp)
        with TestClient(app) as bare:
            response = bare.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposed(self, client, post_webhook, drain):
        post_webhook(webhook_payload(messages=[text_message("wamid.M", "15551234567", "count me")]))
        drain()

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "webhook_deliveries_total" in response.text
        assert "webhook_events_total" in response.text
