import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status

from streamchat.adapter import BackendStreamAdapter
from streamchat.config import settings
from streamchat.errors import (
    BackendReadError,
    BackendWriteError,
    MessageNotFound,
    SendFailed,
    Unauthorized,
    ValidationError,
)
from streamchat.logging_utils import RequestLoggingMiddleware, log_chat_data, setup_logging
from streamchat.metrics import get_metrics, get_metrics_content_type
from streamchat.moderation import ModerationEngine
from streamchat.schemas import (
    ChatFeedResponse,
    ErrorResponse,
    HealthResponse,
    Identity,
    ModerationFeedResponse,
    ModerationStats,
    ReconnectResponse,
    SendMessageRequest,
    SendMessageResponse,
    SoftDeleteResponse,
)
from streamchat.storage import RealtimeStore
from streamchat.viewer import ViewerChatEngine


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

MODERATOR_ROLES = {"moderator", "admin"}


async def connect_engines(app: FastAPI) -> None:
    for engine in (app.state.viewer, app.state.moderation):
        if engine.is_connected:
            continue
        try:
            await engine.connect()
        except BackendReadError as e:
            logger.error(f"{type(engine).__name__} failed to connect: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the realtime store and connect both chat engines
    - Shutdown: release every subscription, then close the store
    """
    store = RealtimeStore(settings.DATABASE_URL)
    store.init_db()
    adapter = BackendStreamAdapter(store)

    app.state.store = store
    app.state.viewer = ViewerChatEngine(
        adapter,
        stream_path=settings.CHAT_STREAM_PATH,
        window=settings.VIEWER_WINDOW,
        connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
        max_message_length=settings.MAX_MESSAGE_LENGTH,
    )
    app.state.moderation = ModerationEngine(
        adapter,
        stream_path=settings.CHAT_STREAM_PATH,
        window=settings.MODERATION_WINDOW,
        connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
    )
    await connect_engines(app)

    yield

    app.state.viewer.disconnect()
    app.state.moderation.disconnect()
    store.dispose()


app = FastAPI(
    title="Stream Chat API",
    description="Live-stream chat feed with soft-delete moderation",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_identity(
    x_user_id: Annotated[str, Header(alias="X-User-Id")] = "",
    x_user_name: Annotated[str, Header(alias="X-User-Name")] = "",
    x_user_avatar: Annotated[str | None, Header(alias="X-User-Avatar")] = None,
    x_user_role: Annotated[str, Header(alias="X-User-Role")] = "",
) -> Identity:
    """
    Identity snapshot forwarded by the hosting environment.
    Headers are trusted as-is; authentication happens upstream.
    """
    return Identity(
        id=x_user_id.strip(),
        display_name=x_user_name.strip(),
        avatar_url=x_user_avatar or None,
        is_moderator=x_user_role.strip().lower() in MODERATOR_ROLES,
    )


def get_viewer(request: Request) -> ViewerChatEngine:
    return request.app.state.viewer


def get_moderation(request: Request) -> ModerationEngine:
    return request.app.state.moderation


def require_moderator(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_moderator or not identity.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="moderator privileges required"
        )
    return identity


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. The realtime store is reachable and its schema is applied
    2. Both chat engines hold a live subscription

    Otherwise returns 503 (Service Unavailable).
    """
    if not request.app.state.store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Realtime store not reachable or schema not applied"
        )

    for engine in (request.app.state.viewer, request.app.state.moderation):
        if not engine.is_connected:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason=f"{type(engine).__name__} is {engine.state.value}"
            )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Routes
# =============================================================================

@app.get("/chat/messages", response_model=ChatFeedResponse)
async def list_chat_messages(viewer: ViewerChatEngine = Depends(get_viewer)) -> ChatFeedResponse:
    """
    Current visible feed: live messages ordered by sentAt, id.
    Soft-deleted messages are never included.
    """
    messages = viewer.messages
    logger.debug(f"GET /chat/messages: {len(messages)} visible messages")
    return ChatFeedResponse(data=messages, total=len(messages), connected=viewer.is_connected)


@app.post(
    "/chat/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        422: {"model": ErrorResponse, "description": "Empty body or incomplete identity"},
        502: {"model": ErrorResponse, "description": "Backend rejected the write"},
    }
)
async def send_chat_message(
    payload: SendMessageRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    viewer: ViewerChatEngine = Depends(get_viewer),
) -> SendMessageResponse:
    """
    Post a message as the calling user.

    The message is not echoed locally; it appears in GET /chat/messages
    once the backend delivers the next snapshot.
    """
    try:
        message_id = await viewer.send(payload.body, identity)
    except ValidationError as e:
        log_chat_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.message
        )
    except SendFailed as e:
        log_chat_data(request, result="backend_error")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=e.message
        )

    log_chat_data(request, message_id=message_id, result="sent")
    return SendMessageResponse(id=message_id)


@app.post(
    "/chat/reconnect",
    response_model=ReconnectResponse,
    responses={503: {"model": ReconnectResponse, "description": "An engine is still not connected"}},
)
async def reconnect(request: Request, response: Response) -> ReconnectResponse:
    """
    Retry the subscriptions of engines that are not connected.
    Connected engines are left untouched.
    """
    await connect_engines(request.app)

    viewer, moderation = request.app.state.viewer, request.app.state.moderation
    if not (viewer.is_connected and moderation.is_connected):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReconnectResponse(viewer=viewer.state.value, moderation=moderation.state.value)


# =============================================================================
# Moderation Routes
# =============================================================================

@app.get(
    "/admin/chat/messages",
    response_model=ModerationFeedResponse,
    responses={403: {"model": ErrorResponse, "description": "Not a moderator"}},
)
async def list_moderation_messages(
    q: Annotated[str | None, Query(description="Case-insensitive search in display name and body")] = None,
    show_deleted: Annotated[bool, Query(description="Include soft-deleted messages")] = False,
    identity: Identity = Depends(require_moderator),
    moderation: ModerationEngine = Depends(get_moderation),
) -> ModerationFeedResponse:
    """
    Moderation window (most recent 200, deleted included) with local filters.

    Query Parameters:
        - q: Substring matched against display name or body
        - show_deleted: Include soft-deleted messages (default false)
    """
    data = moderation.view(search=q or "", show_deleted=show_deleted)
    logger.info(f"GET /admin/chat/messages: {len(data)} of {moderation.total_count} (q={q}, show_deleted={show_deleted})")
    return ModerationFeedResponse(data=data, total=len(data), stats=moderation.stats())


@app.get(
    "/admin/chat/stats",
    response_model=ModerationStats,
    responses={403: {"model": ErrorResponse, "description": "Not a moderator"}},
)
async def moderation_stats(
    identity: Identity = Depends(require_moderator),
    moderation: ModerationEngine = Depends(get_moderation),
) -> ModerationStats:
    """Window-limited counts for display."""
    return moderation.stats()


@app.post(
    "/admin/chat/messages/{message_id}/delete",
    response_model=SoftDeleteResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a moderator"},
        404: {"model": ErrorResponse, "description": "Message not in the moderation window"},
        502: {"model": ErrorResponse, "description": "Backend rejected the patch"},
    }
)
async def soft_delete_message(
    message_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    moderation: ModerationEngine = Depends(get_moderation),
) -> SoftDeleteResponse:
    """
    Soft-delete a message. Deleting an already deleted message is a no-op
    and keeps the first deletedAt/deletedBy.
    """
    try:
        result = await moderation.soft_delete(message_id, identity)
    except Unauthorized as e:
        log_chat_data(request, message_id=message_id, result="unauthorized")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)
    except MessageNotFound as e:
        log_chat_data(request, message_id=message_id, result="not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except BackendWriteError as e:
        log_chat_data(request, message_id=message_id, result="backend_error")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    log_chat_data(request, message_id=message_id, result=result.value)
    return SoftDeleteResponse(status=result.value, id=message_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
