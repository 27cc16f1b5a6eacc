import logging
import secrets
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError

from wa_inbox.admin import router as admin_router
from wa_inbox.config import Settings, get_settings
from wa_inbox.errors import InboxError, SendError
from wa_inbox.logging_utils import RequestLoggingMiddleware, get_request_id, log_webhook_data, setup_logging
from wa_inbox.metrics import get_metrics, get_metrics_content_type
from wa_inbox.pipeline import IngestJob, IngestionPipeline
from wa_inbox.schemas import ErrorResponse, HealthResponse, WebhookResponse
from wa_inbox.storage import Database, translate_db_error
from wa_inbox.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

# Client-facing messages; the raw exception text is only exposed in development
_PUBLIC_MESSAGES = {
    "PERSISTENCE_ERROR": "Internal server error",
    "DATABASE_CONNECTION_ERROR": "Database connection failed",
    "SCHEMA_NOT_READY": "Database schema not applied. Please run migrations.",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables (when enabled) and start the ingestion worker
    - Shutdown: drain the worker, close the send client and the engine
    """
    state = app.state
    if state.settings.DB_AUTO_CREATE:
        state.db.init_schema()
    await state.pipeline.start()

    try:
        yield
    finally:
        await state.pipeline.stop()
        await state.whatsapp_client.aclose()
        state.db.dispose()


router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_WEBHOOK_TOKEN is set (the provider cannot subscribe otherwise)
    2. DB is reachable and both tables exist

    Otherwise returns 503 (Service Unavailable).
    """
    if not request.app.state.settings.WHATSAPP_WEBHOOK_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WHATSAPP_WEBHOOK_TOKEN not configured")

    if not request.app.state.db.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get(
    "/webhooks/whatsapp",
    response_class=PlainTextResponse,
    responses={403: {"description": "Verification failed"}, 500: {"description": "Webhook token not configured"}},
)
async def verify_webhook(
    request: Request,
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> Response:
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    expected = request.app.state.settings.WHATSAPP_WEBHOOK_TOKEN
    if not expected:
        logger.error("WHATSAPP_WEBHOOK_TOKEN not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook token not configured"})

    if hub_mode == "subscribe" and hub_verify_token and secrets.compare_digest(
        hub_verify_token.encode(), expected.encode()
    ):
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning(f"Webhook verification failed: mode={hub_mode!r}")
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/webhooks/whatsapp", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
) -> WebhookResponse:
    """
    Acknowledge a provider delivery and queue it for background ingestion.

    Always 200: decoding, signature checks and storage happen after the
    response, and their failures are only logged and counted.
    """
    raw_body = await request.body()
    job = IngestJob(
        raw_body=raw_body,
        content_type=request.headers.get("content-type"),
        signature=x_hub_signature_256,
        request_id=get_request_id(),
    )
    queued = request.app.state.pipeline.enqueue(job)
    log_webhook_data(request=request, queued=queued, body_bytes=len(raw_body))
    return WebhookResponse(status="ok")


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total / request_latency_seconds by route
    - webhook_deliveries_total / webhook_events_total by outcome
    - whatsapp_sends_total by outcome
    """
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Error handling
# =============================================================================

def _install_error_handlers(app: FastAPI, settings: Settings) -> None:
    async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
        if isinstance(exc, SendError):
            body = ErrorResponse(message="Failed to send WhatsApp message", code=exc.code, error=exc.message)
        else:
            body = ErrorResponse(message=_PUBLIC_MESSAGES.get(exc.code, exc.message), code=exc.code)
            if settings.is_development:
                body.error = exc.message

        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))

    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        return await inbox_error_handler(request, translate_db_error(exc))

    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        body = ErrorResponse(message="Validation failed", code="VALIDATION_ERROR", errors=errors)
        return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))

    app.add_exception_handler(InboxError, inbox_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)


# =============================================================================
# Application factory
# =============================================================================

def create_app(settings: Optional[Settings] = None, whatsapp_client=None) -> FastAPI:
    """
    Build the application and its collaborators.

    Args:
        settings: Defaults to get_settings()
        whatsapp_client: Outgoing send client; defaults to a WhatsAppClient
            built from settings
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="WhatsApp Inbox API",
        description="WhatsApp Cloud API webhook ingestion and admin inbox",
        version="1.0.0",
        lifespan=lifespan,
    )

    db = Database(settings.DATABASE_URL)
    app.state.settings = settings
    app.state.db = db
    app.state.pipeline = IngestionPipeline(db, settings)
    app.state.whatsapp_client = whatsapp_client or WhatsAppClient(settings)

    # Add request logging middleware
    app.add_middleware(RequestLoggingMiddleware)
    _install_error_handlers(app, settings)

    app.include_router(router)
    app.include_router(admin_router)
    return app


app = create_app()
