from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from .config import Settings, get_settings
from .gate import (
    GLOBAL_LIMIT_MESSAGE,
    SMS_LIMIT_MESSAGE,
    RateLimiter,
    SecurityHeadersMiddleware,
    global_rate_limit,
    require_api_key,
    sms_rate_limit,
)
from .logging_setup import configure_logging
from .pipeline import dispatch_sms, share_location, truncate_preview
from .sms import (
    DeliveryInfo,
    HistoryEntry,
    HistoryResponse,
    Location,
    RecipientResult,
    SendSmsRequest,
    SendSmsResponse,
    ShareLocationRequest,
    ShareLocationResponse,
    SmsStatusResponse,
)
from .store import Result, StatusStore
from .twilio_client import SmsProvider, TwilioProvider

VERSION = "1.0.0"
DEFAULT_HISTORY_LIMIT = 50
_LEADING_INT_RE = re.compile(r"\s*[-+]?\d+")

logger = logging.getLogger(__name__)


# --- Dependencies ---


def get_store(request: Request) -> StatusStore:
    return request.app.state.store


def get_provider(request: Request) -> SmsProvider:
    return request.app.state.provider


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _result_out(result: Result) -> RecipientResult:
    return RecipientResult(
        recipient=result.recipient,
        status=result.status,
        provider_id=result.provider_id,
        error=result.error,
    )


# --- Routes ---

router = APIRouter(prefix="/v1/emergency")


@router.post(
    "/send-sms",
    status_code=201,
    response_model=SendSmsResponse,
    dependencies=[Depends(sms_rate_limit), Depends(require_api_key)],
)
def send_sms(
    payload: SendSmsRequest,
    store: StatusStore = Depends(get_store),
    provider: SmsProvider = Depends(get_provider),
    settings: Settings = Depends(get_app_settings),
) -> SendSmsResponse:
    """
    Send one message to every recipient.

    Example body:

      { "recipients": ["+15551234567"], "message": "Evacuate now" }

    Always 201 once validation passes; per-recipient failures are reported
    inline and turn the overall status into "partial".
    """
    record = dispatch_sms(store=store, provider=provider, settings=settings, request=payload)
    return SendSmsResponse(
        message_id=record.id,
        status=record.status,
        sent_count=record.sent_count,
        failed_count=record.failed_count,
        results=[_result_out(r) for r in record.results],
    )


@router.post(
    "/share-location",
    status_code=201,
    response_model=ShareLocationResponse,
    dependencies=[Depends(sms_rate_limit), Depends(require_api_key)],
)
def share_location_endpoint(
    payload: ShareLocationRequest,
    provider: SmsProvider = Depends(get_provider),
) -> ShareLocationResponse:
    """Text a Google Maps link for (lat, lon) to every recipient."""
    share = share_location(provider=provider, request=payload)
    return ShareLocationResponse(
        message_id=share.message_id,
        location=Location(lat=share.lat, lon=share.lon),
        map_link=share.map_link,
        sent_count=share.sent_count,
        failed_count=share.failed_count,
        results=[_result_out(r) for r in share.results],
    )


@router.get(
    "/sms-status/{message_id}",
    response_model=SmsStatusResponse,
    dependencies=[Depends(require_api_key)],
)
def sms_status(message_id: str, store: StatusStore = Depends(get_store)) -> SmsStatusResponse:
    record = store.get_record(message_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Message not found")

    deliveries = [
        DeliveryInfo(
            recipient=d.recipient,
            status=d.status,
            provider_id=d.provider_id,
            created_at=d.created_at,
            updated_at=d.updated_at,
        )
        for d in store.deliveries_for(message_id)
    ]
    return SmsStatusResponse(
        message_id=record.id,
        status=record.status,
        timestamp=record.timestamp,
        recipients_count=len(record.recipients),
        sent_count=record.sent_count,
        failed_count=record.failed_count,
        deliveries=deliveries,
    )


def parse_limit(raw: str | None) -> int:
    """Leading integer of ``raw``; missing, garbage or non-positive values give the default."""
    match = _LEADING_INT_RE.match(raw or "")
    value = int(match.group()) if match else 0
    return value if value > 0 else DEFAULT_HISTORY_LIMIT


@router.get(
    "/sms-history",
    response_model=HistoryResponse,
    dependencies=[Depends(require_api_key)],
)
def sms_history(
    limit: str | None = None,
    since: datetime | None = None,
    store: StatusStore = Depends(get_store),
) -> HistoryResponse:
    """
    Recent sends, newest first.

    Example:
      GET /v1/emergency/sms-history?limit=10
      GET /v1/emergency/sms-history?since=2024-06-01T00:00:00Z
    """
    cap = parse_limit(limit)
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    records, total = store.list_records(limit=cap, since=since)
    messages = [
        HistoryEntry(
            id=r.id,
            recipients=list(r.recipients),
            message=truncate_preview(r.message),
            timestamp=r.timestamp,
            status=r.status,
            sent_count=r.sent_count,
            failed_count=r.failed_count,
            metadata=r.metadata,
        )
        for r in records
    ]
    return HistoryResponse(messages=messages, total=total, limit=cap)


async def _read_callback_fields(request: Request) -> dict[str, str]:
    """Twilio posts form-encoded callbacks; JSON is accepted for manual testing."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            data = await request.json()
            if not isinstance(data, dict):
                return {}
            return {str(k): str(v) for k, v in data.items() if v is not None}
        form = await request.form()
        return {k: str(v) for k, v in form.items()}
    except (ValueError, MultiPartException, StarletteHTTPException) as exc:
        logger.warning(
            "webhook.unparsable_body",
            extra={"content_type": content_type, "error": str(exc)},
        )
        return {}


@router.post("/sms-webhook/{message_id}", response_class=PlainTextResponse)
async def sms_webhook(message_id: str, request: Request) -> PlainTextResponse:
    """
    Twilio delivery status callback.

    Unauthenticated, and always acknowledged with 200 "OK": an unknown
    message id or recipient is simply ignored so Twilio never retries.
    """
    fields = await _read_callback_fields(request)
    status = fields.get("MessageStatus") or fields.get("SmsStatus")
    recipient = fields.get("To")
    provider_id = fields.get("MessageSid")

    updated = False
    if status and recipient:
        updated = get_store(request).update_delivery(
            message_id, recipient, status, provider_id=provider_id
        )

    logger.info(
        "webhook.status",
        extra={
            "message_id": message_id,
            "recipient": recipient,
            "delivery_status": status,
            "provider_id": provider_id,
            "matched": updated,
        },
    )
    return PlainTextResponse("OK", status_code=200)


# --- Error handlers ---


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        loc = list(err.get("loc", ()))
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        details.append(
            {
                "field": ".".join(str(part) for part in loc),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
        )
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # No route matched method + path (as opposed to a handler raising 404).
    # A known path with the wrong method still carries the partially matched route.
    unmatched = exc.status_code == 404 and request.scope.get("route") is None
    if unmatched or exc.status_code == 405:
        return JSONResponse(
            status_code=404,
            content={"error": "Not found", "message": "The requested endpoint does not exist"},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_error",
        exc_info=exc,
        extra={"path": request.url.path, "method": request.method},
    )
    settings: Settings = request.app.state.settings
    message = str(exc) if settings.is_development else "Something went wrong"
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": message},
    )


# --- App factory ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "app.startup",
        extra={
            "environment": settings.environment,
            "port": settings.port,
            "provider_configured": app.state.provider.configured,
        },
    )
    yield


def create_app(
    settings: Settings | None = None,
    provider: SmsProvider | None = None,
    store: StatusStore | None = None,
) -> FastAPI:
    """
    Build the relay app with its own store and rate limiters.

    Each call gets fresh in-memory state, which keeps tests isolated.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="sms-relay",
        version=VERSION,
        lifespan=lifespan,
        dependencies=[Depends(global_rate_limit)],
    )

    app.state.settings = settings
    app.state.provider = provider if provider is not None else TwilioProvider(settings)
    app.state.store = store if store is not None else StatusStore()
    app.state.global_limiter = RateLimiter(
        settings.rate_limit_window_seconds, settings.rate_limit_max, GLOBAL_LIMIT_MESSAGE
    )
    app.state.sms_limiter = RateLimiter(
        settings.sms_rate_limit_window_seconds, settings.sms_rate_limit_max, SMS_LIMIT_MESSAGE
    )

    # Last added runs first: security headers wrap CORS.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": VERSION,
            "services": {
                "provider_configured": app.state.provider.configured,
                "storage_ok": app.state.store.ping(),
            },
        }

    app.include_router(router)
    return app


app = create_app()
