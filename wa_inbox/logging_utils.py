"""
Structured JSON logging and request correlation.

Every log line carries the id of the HTTP request it belongs to. Webhook
deliveries are processed after their request has finished, so the ingestion
worker re-binds the id of the request that queued them.
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from wa_inbox.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

# Loggers that are too chatty at INFO for a webhook receiver
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


@contextmanager
def bind_request_id(request_id: Optional[str]) -> Iterator[None]:
    """Attach request_id to every log record emitted inside the block."""
    token = request_id_ctx.set(request_id)
    try:
        yield
    finally:
        request_id_ctx.reset(token)


class InboxJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with millisecond UTC `ts`, `level` and the bound `request_id`."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # The format string pre-seeds `ts` with None
        if not log_record.get("ts"):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers to one JSON stdout handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(InboxJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    if root.level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    An incoming X-Request-ID is reused, otherwise a new one is generated;
    either way it is echoed back on the response.

    Log keys: request_id, method, path, route, status, latency_ms, plus
    `queued` and `body_bytes` for webhook deliveries (see log_webhook_data).
    """

    logger = logging.getLogger("wa_inbox.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with bind_request_id(request_id):
            started = time.perf_counter()
            response = await call_next(request)
            latency_seconds = time.perf_counter() - started

            response.headers[REQUEST_ID_HEADER] = request_id

            # Route template keeps phone numbers out of metric labels
            route = getattr(request.scope.get("route"), "path", request.url.path)
            if route != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            extra = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }
            self.logger.log(_level_for(response.status_code), "Request completed", extra=extra)

        return response


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def log_webhook_data(request: Request, queued: bool, body_bytes: int) -> None:
    """
    Attach webhook fields to the request log line written by the middleware.

    Args:
        request: FastAPI request object
        queued: Whether the delivery reached the ingestion queue
        body_bytes: Raw body size
    """
    request.state.webhook_log_data = {"queued": queued, "body_bytes": body_bytes}
