import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wamirror.config import settings
from wamirror.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from wamirror.messaging import LocalMessageError, send_local_message
from wamirror.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from wamirror.normalizer import BatchOutcome, SamplesNotFoundError, WebhookNormalizer
from wamirror.realtime import EventPublisher, get_connection_manager
from wamirror.schemas import (
    BatchItemResponse,
    BatchResponse,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    SendMessageRequest,
    UploadedSamplesRequest,
    WebhookResponse,
)
from wamirror.storage import (
    check_db_health,
    get_db,
    init_db,
    list_conversation_messages,
    list_conversations,
)
from wamirror.utils import verify_webhook_signature


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    yield


app = FastAPI(
    title="WhatsApp Webhook Mirror",
    description="Stores WhatsApp Business webhook messages and mirrors them to chat clients in real time",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_publisher() -> EventPublisher:
    """Publisher used by the request handlers; tests override it."""
    return get_connection_manager()


def get_normalizer(publisher: EventPublisher = Depends(get_publisher)) -> WebhookNormalizer:
    return WebhookNormalizer(business_phone_id=settings.BUSINESS_PHONE_ID, publisher=publisher)


def to_batch_response(outcome: BatchOutcome) -> BatchResponse:
    return BatchResponse(
        processed=outcome.processed,
        results=[
            BatchItemResponse(source=item.source, result=MessageResponse.model_validate(item.message))
            for item in outcome.items
        ],
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - 200 only if a business phone id is configured and the
    database is reachable with its schema applied; 503 otherwise.
    """
    if not settings.BUSINESS_PHONE_ID:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="BUSINESS_PHONE_ID not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/api/contacts", response_model=list[ConversationSummary])
async def contacts(db: Session = Depends(get_db)) -> list[ConversationSummary]:
    """Conversations with their latest message, most recent first."""
    return [ConversationSummary(**row) for row in list_conversations(db)]


@app.get("/api/messages/{conversation_id}", response_model=list[MessageResponse])
async def conversation_messages(conversation_id: str, db: Session = Depends(get_db)) -> list[MessageResponse]:
    """Messages of one conversation in chronological order."""
    return [MessageResponse.model_validate(msg) for msg in list_conversation_messages(db, conversation_id)]


# =============================================================================
# Local Send Route
# =============================================================================

@app.post(
    "/api/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"description": "Validation error"}},
)
async def create_message(
    request_body: SendMessageRequest,
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> MessageResponse:
    """
    Store a message typed in the chat UI as an outbound "sent" message and
    broadcast it as a new-message event.
    """
    try:
        message = await send_local_message(
            db,
            business_phone_id=settings.BUSINESS_PHONE_ID,
            conversation_id=request_body.conversation_id,
            body=request_body.body,
            display_name=request_body.display_name,
            publisher=publisher,
        )
    except LocalMessageError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    return MessageResponse.model_validate(message)


# =============================================================================
# Webhook Routes
# =============================================================================

@app.post(
    "/api/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Body is not JSON"},
    }
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
) -> WebhookResponse:
    """
    Ingest one WhatsApp Business webhook payload.

    - Verifies X-Hub-Signature-256 when WEBHOOK_SECRET is set
    - Stores a new message or applies a status update
    - Answers success even when nothing was stored (unrecognized payload,
      unknown message id, or a dropped write), so the vendor does not retry
    """
    raw_body = await request.body()

    if settings.WEBHOOK_SECRET and not verify_webhook_signature(
        raw_body, x_hub_signature_256, settings.WEBHOOK_SECRET
    ):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid JSON: {e}")

    message = await normalizer.process(db, payload)

    if message is None:
        log_webhook_data(request, result="ignored")
        return WebhookResponse(result=None)

    log_webhook_data(request, result="stored", external_id=message.external_id)
    return WebhookResponse(result=MessageResponse.model_validate(message))


@app.post(
    "/api/process-samples",
    response_model=BatchResponse,
    responses={404: {"model": ErrorResponse, "description": "No samples to process"}},
)
async def process_samples(
    request: Request,
    db: Session = Depends(get_db),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
) -> BatchResponse:
    """Replay every JSON payload of the configured samples directory."""
    try:
        outcome = await normalizer.process_directory(db, settings.SAMPLES_DIR)
    except SamplesNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    log_webhook_data(request, result="batch", processed=outcome.processed)
    return to_batch_response(outcome)


@app.post("/api/process-uploaded-samples", response_model=BatchResponse)
async def process_uploaded_samples(
    request: Request,
    request_body: UploadedSamplesRequest,
    db: Session = Depends(get_db),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
) -> BatchResponse:
    """Replay payloads uploaded by the client, in the given order."""
    outcome = await normalizer.process_batch(db, request_body.payloads)
    log_webhook_data(request, result="batch", processed=outcome.processed)
    return to_batch_response(outcome)


# =============================================================================
# Real-time Route
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket):
    """
    Broadcast channel. Clients only listen; anything they send is ignored.

    Events: new-message (full record), status-update ({externalId, deliveryState}).
    """
    manager = get_connection_manager()
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Realtime client closed the connection")
    finally:
        manager.disconnect(websocket)


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
