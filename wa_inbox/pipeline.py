"""
Background ingestion of WhatsApp webhook deliveries.

The webhook route only builds an IngestJob and hands it to the queue;
the provider gets its 200 before any decoding or store work starts.
A consumer task started from the app lifespan turns every queued job into
its own asyncio task, so one slow delivery does not hold up the next.

Per delivery: decode -> verify signature -> walk entry[].changes[] ->
handle every message and status concurrently. Each stage logs and counts
its own failures; nothing is retried and nothing propagates.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Iterator, Optional

from wa_inbox import storage
from wa_inbox.config import Settings
from wa_inbox.decoder import decode_payload
from wa_inbox.errors import DecodeError, SignatureError
from wa_inbox.extractor import extract_message
from wa_inbox.logging_utils import bind_request_id
from wa_inbox.metrics import record_webhook_delivery, record_webhook_event, set_queue_depth
from wa_inbox.storage import Database
from wa_inbox.utils import canonicalize_phone, epoch_to_ts, utc_now_ts, verify_signature

logger = logging.getLogger(__name__)

BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"
CHANGE_FIELDS = ("messages", "message_status")


@dataclass
class IngestJob:
    raw_body: bytes
    content_type: Optional[str] = None
    signature: Optional[str] = None
    request_id: Optional[str] = None
    received_at: float = field(default_factory=time.monotonic)


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _scalar(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return ""
    return str(value)


class IngestionPipeline:
    def __init__(self, db: Database, settings: Settings):
        self._db = db
        self._app_secret = settings.WHATSAPP_APP_SECRET
        self._business_number = settings.WHATSAPP_PHONE_NUMBER_ID
        self._queue_size = settings.INGEST_QUEUE_SIZE
        self._shutdown_timeout = settings.INGEST_SHUTDOWN_TIMEOUT
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._in_flight: set = set()
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._consumer = asyncio.create_task(self._consume(), name="webhook-ingest-consumer")
        self._running = True
        logger.info(f"Ingestion worker started (queue size {self._queue_size})")

    async def stop(self) -> None:
        """Stop consuming and give in-flight deliveries a bounded grace period."""
        self._running = False
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

        if self._queue is not None:
            self._drain_leftovers()

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=self._shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} webhook deliveries still running at shutdown")
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Ingestion worker stopped")

    def _drain_leftovers(self) -> None:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            record_webhook_delivery("dropped_at_shutdown")
            dropped += 1
        set_queue_depth(0)
        if dropped:
            logger.warning(f"Dropped {dropped} queued webhook deliveries at shutdown")

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # =========================================================================
    # Hand-off
    # =========================================================================

    def enqueue(self, job: IngestJob) -> bool:
        """Queue a delivery without waiting. Returns False when it was dropped."""
        if self._queue is None or not self._running:
            logger.error("Ingestion worker not running, webhook delivery dropped")
            record_webhook_delivery("not_running")
            return False

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error(f"Ingestion queue full ({self._queue_size}), webhook delivery dropped")
            record_webhook_delivery("queue_full")
            return False

        record_webhook_delivery("queued")
        set_queue_depth(self._queue.qsize())
        return True

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            set_queue_depth(self._queue.qsize())
            task = asyncio.create_task(self._run(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _run(self, job: IngestJob) -> None:
        try:
            with bind_request_id(job.request_id):
                await self.process(job)
        except Exception:
            logger.exception("Unhandled error in webhook processing")
            record_webhook_delivery("error")
        finally:
            self._queue.task_done()

    # =========================================================================
    # Processing
    # =========================================================================

    def _verify(self, job: IngestJob) -> None:
        if not self._app_secret:
            logger.warning("Signature verification not configured (WHATSAPP_APP_SECRET empty), skipping")
            return
        if not job.signature:
            logger.warning("No x-hub-signature-256 header, skipping signature verification")
            return
        if not verify_signature(job.raw_body, job.signature, self._app_secret):
            raise SignatureError("Invalid webhook signature")
        logger.debug("Webhook signature verified")

    async def process(self, job: IngestJob) -> str:
        """
        Process one delivery end to end.

        Returns the delivery outcome: processed, ignored, decode_error or
        invalid_signature.
        """
        queued_ms = round((time.monotonic() - job.received_at) * 1000, 2)
        logger.info(f"Processing webhook delivery ({len(job.raw_body)} bytes, queued {queued_ms} ms)")

        try:
            payload = decode_payload(job.raw_body, job.content_type)
            self._verify(job)
        except (DecodeError, SignatureError) as e:
            result = e.code.lower()
            logger.error(f"Dropping webhook delivery: {e.message}")
            record_webhook_delivery(result)
            return result

        data = payload.data
        if data.get("object") != BUSINESS_ACCOUNT_OBJECT:
            logger.info(f"Ignoring webhook object type: {data.get('object')!r}")
            record_webhook_delivery("ignored")
            return "ignored"

        units = list(self._dispatch(data))
        results = await asyncio.gather(*units, return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, Exception):
                logger.error(f"Webhook event handler raised: {outcome!r}")

        logger.info(f"Webhook delivery processed: {len(units)} events")
        record_webhook_delivery("processed")
        return "processed"

    def _dispatch(self, data: dict) -> Iterator[Awaitable[str]]:
        for entry in _as_list(data.get("entry")):
            if not isinstance(entry, dict):
                continue
            for change in _as_list(entry.get("changes")):
                if not isinstance(change, dict):
                    continue
                value = change.get("value")
                if change.get("field") not in CHANGE_FIELDS or not isinstance(value, dict):
                    logger.debug(f"Skipping change field={change.get('field')!r}")
                    continue

                for message in _as_list(value.get("messages")):
                    if isinstance(message, dict):
                        yield self.handle_message(message)
                for status in _as_list(value.get("statuses")):
                    if isinstance(status, dict):
                        yield self.handle_status(status)

    # =========================================================================
    # Messages
    # =========================================================================

    def build_incoming(self, message: dict) -> dict:
        """Map a provider message onto create_message() arguments."""
        extracted = extract_message(message)

        message_id = _scalar(message.get("id"))
        if not message_id:
            message_id = f"incoming_{uuid.uuid4().hex}"
            logger.warning(f"Incoming message without id, using {message_id}")

        sender = canonicalize_phone(_scalar(message.get("from")))
        if not sender:
            logger.warning(f"Incoming message {message_id} without sender")

        if extracted.interactive:
            logger.debug(f"Interactive reply: {extracted.interactive.model_dump()}")
        if extracted.reaction:
            logger.debug(f"Reaction: {extracted.reaction.model_dump()}")
        if extracted.context:
            logger.debug(f"Reply context: {extracted.context.model_dump(by_alias=True)}")

        return {
            "message_id": message_id,
            "from_number": sender,
            "to_number": self._business_number,
            "direction": "INCOMING",
            "message_type": extracted.message_type.value,
            "text": extracted.text or None,
            "media_url": extracted.media_url,
            "timestamp": epoch_to_ts(message.get("timestamp")) or utc_now_ts(),
        }

    def _store_incoming(self, record: dict) -> bool:
        with self._db.session() as session:
            _, is_duplicate = storage.create_message(session, **record)
            return is_duplicate

    async def handle_message(self, message: dict) -> str:
        try:
            record = self.build_incoming(message)
            is_duplicate = await asyncio.to_thread(self._store_incoming, record)
        except Exception as e:
            logger.error(f"Failed to store incoming message {message.get('id')!r}: {e}")
            record_webhook_event("message", "failed")
            return "failed"

        result = "duplicate" if is_duplicate else "created"
        logger.info(
            f"Incoming message {record['message_id']}: {result}, "
            f"from={record['from_number']}, type={record['message_type']}"
        )
        record_webhook_event("message", result)
        return result

    # =========================================================================
    # Statuses
    # =========================================================================

    def _store_status(self, message_id: str, status: str) -> int:
        with self._db.session() as session:
            return storage.update_message_status(session, message_id, status)

    async def handle_status(self, status: dict) -> str:
        message_id = _scalar(status.get("id"))
        status_value = _scalar(status.get("status")).upper()

        if not message_id or not status_value:
            logger.warning(f"Skipping status update without id or status: {status!r}")
            record_webhook_event("status", "skipped")
            return "skipped"

        try:
            updated = await asyncio.to_thread(self._store_status, message_id, status_value)
        except Exception as e:
            logger.error(f"Failed to update status of {message_id}: {e}")
            record_webhook_event("status", "failed")
            return "failed"

        result = "updated" if updated else "unmatched"
        logger.info(f"Message {message_id} status: {status_value} ({result})")
        record_webhook_event("status", result)
        return result
