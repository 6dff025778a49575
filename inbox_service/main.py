import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from inbox_service.bulk_reader import BulkReader
from inbox_service.cache import ConversationCache
from inbox_service.config import settings
from inbox_service.conversations import (
    ConversationListService,
    ConversationThreadService,
    build_conversation_loader,
    render_thread_csv,
)
from inbox_service.ingest import parse_payload
from inbox_service.logging_utils import RequestLoggingMiddleware, attach_log_context, setup_logging
from inbox_service.metrics import get_metrics, get_metrics_content_type, record_webhook_event
from inbox_service.schemas import (
    ConversationListResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    StatsResponse,
    ThreadResponse,
    WebhookPayload,
    WebhookResponse,
)
from inbox_service.storage import (
    RecordStore,
    SessionLocal,
    StoreError,
    check_db_health,
    create_inbound_message,
    get_db,
    get_stats,
    init_db,
    update_outbound_status,
)
from inbox_service.utils import normalize_phone, utc_now_iso


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and wire the conversation services.
    The conversation cache lives on app.state and starts empty.
    """
    init_db()

    store = RecordStore(SessionLocal)
    cache = ConversationCache(
        loader=build_conversation_loader(BulkReader(store)),
        ttl_seconds=settings.CONVERSATIONS_CACHE_TTL_SECONDS,
    )
    app.state.conversation_cache = cache
    app.state.list_service = ConversationListService(cache)
    app.state.thread_service = ConversationThreadService(store, cache)
    logger.info("Conversation services ready")
    yield


app = FastAPI(
    title="Conversation Inbox API",
    description="Conversation list and threads over WhatsApp inbound and outbound message logs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_list_service(request: Request) -> ConversationListService:
    return request.app.state.list_service


def get_thread_service(request: Request) -> ConversationThreadService:
    return request.app.state.thread_service


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - 200 only when the database is reachable and both
    message tables exist, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get(
    "/webhook",
    response_class=PlainTextResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing hub parameters"},
        403: {"model": ErrorResponse, "description": "Verification failed"},
    }
)
async def webhook_verify(
    request: Request,
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Subscription handshake: echo hub.challenge when hub.verify_token matches
    WEBHOOK_VERIFY_TOKEN.
    """
    if not hub_mode or not hub_verify_token or not hub_challenge:
        logger.error("Webhook verification missing hub parameters")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required parameters: hub.mode, hub.verify_token, hub.challenge"
        )

    expected = settings.WEBHOOK_VERIFY_TOKEN
    if not expected:
        logger.error("Webhook verification requested but WEBHOOK_VERIFY_TOKEN is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verify token not configured")

    token_ok = hmac.compare_digest(hub_verify_token.encode("utf-8"), expected.encode("utf-8"))
    if hub_mode != "subscribe" or not token_ok:
        logger.error(f"Webhook verification failed: mode={hub_mode}, token_match={token_ok}")
        attach_log_context(request, result="verification_failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")

    logger.info("Webhook subscription verified")
    attach_log_context(request, result="verified")
    return PlainTextResponse(hub_challenge)


@app.post("/webhook", response_model=WebhookResponse)
async def webhook(
    request: Request,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """
    Ingest WhatsApp Business webhook events.

    - value.messages: stored in the inbound log (duplicates by message_id ignored)
    - value.statuses: applied to the matching outbound message

    Always answers 200 so the provider does not keep redelivering; problems
    are reported in the body.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Rejected webhook body: {e}")
        record_webhook_event("invalid")
        attach_log_context(request, result="invalid")
        return WebhookResponse(success=False, error="Invalid webhook payload")

    messages, statuses, invalid = parse_payload(payload)
    if not messages and not statuses:
        record_webhook_event("ignored")

    created = duplicates = failed = 0
    for message in messages:
        success, is_duplicate = create_inbound_message(
            db=db,
            message_id=message.message_id,
            from_number=message.from_number,
            timestamp=message.timestamp,
            from_name=message.from_name,
            message_type=message.message_type,
            message_text=message.message_text,
            media_id=message.media_id,
            media_mime_type=message.media_mime_type,
        )
        if not success:
            failed += 1
        elif is_duplicate:
            duplicates += 1
        else:
            created += 1

    status_updates = 0
    for callback in statuses:
        try:
            status_updates += update_outbound_status(db, callback.id, callback.status)
        except Exception as e:
            db.rollback()
            failed += 1
            logger.error(f"Failed to apply status {callback.status} to {callback.id}: {e}")

    record_webhook_event("created", created)
    record_webhook_event("duplicate", duplicates)
    record_webhook_event("status_update", status_updates)
    record_webhook_event("invalid", invalid)
    record_webhook_event("error", failed)

    attach_log_context(
        request,
        messages_created=created,
        duplicates=duplicates,
        status_updates=status_updates,
        invalid=invalid,
        failed=failed,
    )
    logger.info(
        f"Webhook processed: created={created}, duplicates={duplicates}, "
        f"status_updates={status_updates}, invalid={invalid}, failed={failed}"
    )

    if failed:
        return WebhookResponse(
            success=False,
            created=created,
            duplicates=duplicates,
            status_updates=status_updates,
            error=f"{failed} events could not be stored",
        )
    return WebhookResponse(created=created, duplicates=duplicates, status_updates=status_updates)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    request: Request,
    limit: Annotated[Optional[int], Query(ge=1, le=1000, description="Page size; omit for everything from offset")] = None,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    service: ConversationListService = Depends(get_list_service),
) -> ConversationListResponse:
    """
    Conversation list, most urgent first.

    Served from a short-lived cache. Always 200: when the list cannot be
    rebuilt the previous one is returned with stale=true, or an empty list
    with an error when there is none.
    """
    page = await service.list(limit=limit, offset=offset)
    attach_log_context(
        request,
        from_cache=page.from_cache,
        stale=page.stale,
        total=page.total,
        degraded=page.error is not None,
    )
    logger.info(f"GET /conversations: returned {page.loaded} of {page.total} (limit={limit}, offset={offset})")
    return page


@app.get("/conversations/{phone}", response_model=ThreadResponse)
async def get_conversation(
    phone: str,
    limit: Annotated[int, Query(ge=1, le=500, description="Page size per direction")] = 50,
    offset: Annotated[int, Query(ge=0, description="Messages to skip per direction")] = 0,
    service: ConversationThreadService = Depends(get_thread_service),
) -> ThreadResponse:
    """
    Messages exchanged with one contact, oldest first.

    Incoming and outgoing messages are paged independently and then merged,
    so one page holds at most 2*limit messages.
    """
    thread = await service.thread(phone, limit=limit, offset=offset)
    logger.info(f"GET /conversations/{phone}: {len(thread.messages)} messages of {thread.total}")
    return thread


@app.patch(
    "/conversations/{phone}",
    response_model=MarkReadResponse,
    responses={500: {"model": ErrorResponse, "description": "Update failed"}},
)
async def mark_conversation_read(
    phone: str,
    service: ConversationThreadService = Depends(get_thread_service),
) -> MarkReadResponse:
    """Mark every unread incoming message from the contact as read."""
    try:
        updated = await service.mark_read(phone)
    except StoreError as e:
        logger.error(f"Failed to mark {phone} read: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to mark messages as read"
        )
    return MarkReadResponse(success=True, updated=updated)


@app.get(
    "/conversations/{phone}/export",
    responses={500: {"model": ErrorResponse, "description": "Export failed"}},
)
async def export_conversation(
    phone: str,
    format: Annotated[Literal["json", "csv"], Query(description="Export format")] = "json",
    service: ConversationThreadService = Depends(get_thread_service),
) -> Response:
    """Download the whole thread with one contact as JSON or CSV."""
    try:
        messages = await service.export(phone)
    except StoreError as e:
        logger.error(f"Failed to export conversation {phone}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to export conversation"
        )

    filename = f"conversation-{normalize_phone(phone) or 'unknown'}.{format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    logger.info(f"Exporting {len(messages)} messages for {phone} as {format}")

    if format == "csv":
        return Response(
            content=render_thread_csv(messages),
            media_type="text/csv; charset=utf-8",
            headers=headers,
        )

    return JSONResponse(
        content={
            "phone": phone,
            "messages": [message.model_dump(mode="json") for message in messages],
            "total": len(messages),
            "exported_at": utc_now_iso(),
        },
        headers=headers,
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """Message totals across the inbound and outbound logs."""
    stats = get_stats(db)
    logger.info(f"GET /stats: {stats['total_incoming']} incoming, {stats['total_outgoing']} outgoing")
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
