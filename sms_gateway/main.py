import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from sms_gateway.config import settings
from sms_gateway.devices import get_device_topics, resolve_device, set_device_topics
from sms_gateway.errors import (
    DuplicateMessage,
    InvalidTransition,
    NotFound,
    StoreFailure,
    ValidationError,
)
from sms_gateway.gateway import poll_for_device
from sms_gateway.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from sms_gateway.messages import (
    MessageFilters,
    count_messages,
    create_message,
    get_message_by_id,
    get_messages,
    normalize_pagination,
    total_pages,
    update_message_status,
)
from sms_gateway.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_status_update,
    record_submission_outcome,
)
from sms_gateway.reports import build_report
from sms_gateway.schemas import (
    DeviceConfigRequest,
    DeviceResponse,
    ErrorResponse,
    HealthResponse,
    MessageDetail,
    MessagesListResponse,
    PaginationInfo,
    PollMessage,
    PollResponse,
    QueueMessageRequest,
    QueueMessageResponse,
    ReportResponse,
    StatusUpdateRequest,
    SuccessResponse,
)
from sms_gateway.storage import check_db_health, get_db, init_db
from sms_gateway.utils import parse_iso8601


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="SMS Gateway API",
    description="Topic-routed SMS queue for polling gateway devices",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _internal_error(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def _require_device_key(request: Request, device_key: Optional[str]) -> str:
    if not device_key or not device_key.strip():
        logger.warning("Missing device key")
        log_request_data(request, result="unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing device key",
        )
    return device_key


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
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and all
    tables exist, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=QueueMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse, "description": "Duplicate message"},
        422: {"description": "Validation error"},
    },
)
def queue_message(
    request: Request,
    payload: QueueMessageRequest,
    db: Session = Depends(get_db),
) -> QueueMessageResponse:
    """
    Queue a message for delivery by a device subscribed to its topic.

    An identical (to_number, body) accepted within the deduplication
    interval is rejected with 409.
    """
    logger.info(f"POST /messages: topic={payload.topic}, to={payload.to_number}")

    try:
        message = create_message(db, payload.topic, payload.to_number, payload.body)
    except DuplicateMessage as e:
        record_submission_outcome("duplicate")
        log_request_data(request, result="duplicate", dup=True)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValidationError as e:
        record_submission_outcome("validation_error")
        log_request_data(request, result="validation_error")
        raise _bad_request(str(e))
    except StoreFailure as e:
        logger.error(f"Failed to queue message: {e}")
        record_submission_outcome("error")
        log_request_data(request, result="error")
        raise _internal_error("Failed to queue message")

    record_submission_outcome("created")
    log_request_data(request, message_id=message.id, result="created", dup=False)
    return QueueMessageResponse(id=message.id)


@app.get("/messages", response_model=MessagesListResponse)
def list_messages(
    topic: Annotated[Optional[str], Query(description="Filter by topic (exact match)")] = None,
    to_number: Annotated[Optional[str], Query(description="Filter by destination (exact match)")] = None,
    keyword: Annotated[Optional[str], Query(description="Case-insensitive body search")] = None,
    status_filter: Annotated[Optional[str], Query(alias="status", description="pending, sent or failed")] = None,
    page: Annotated[Optional[int], Query(description="Page number, starting at 1")] = None,
    limit: Annotated[Optional[int], Query(description="Page size (default 20, max 100)")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List messages, newest first.

    Out-of-range page and limit values are clamped rather than rejected.
    """
    page, limit, offset = normalize_pagination(page, limit)
    filters = MessageFilters(
        topic=topic,
        to_number=to_number,
        keyword=keyword,
        status=status_filter,
    )
    logger.info(f"GET /messages: filters={filters}, page={page}, limit={limit}")

    try:
        messages = get_messages(db, filters, limit=limit, offset=offset)
        total = count_messages(db, filters)
    except ValidationError as e:
        raise _bad_request(str(e))
    except StoreFailure as e:
        logger.error(f"Failed to retrieve messages: {e}")
        raise _internal_error("Failed to retrieve messages")

    return MessagesListResponse(
        data=[MessageDetail.model_validate(m) for m in messages],
        pagination=PaginationInfo(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages(total, limit),
        ),
    )


@app.get(
    "/messages/{message_id}",
    response_model=MessageDetail,
    responses={404: {"model": ErrorResponse}},
)
def get_message(message_id: str, db: Session = Depends(get_db)) -> MessageDetail:
    """Fetch one message with its delivery state."""
    try:
        message = get_message_by_id(db, message_id)
    except StoreFailure as e:
        logger.error(f"Failed to get message {message_id}: {e}")
        raise _internal_error("Failed to retrieve message")

    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageDetail.model_validate(message)


# =============================================================================
# Reports Route
# =============================================================================

@app.get("/reports", response_model=ReportResponse)
def get_report(
    start_date: Annotated[Optional[str], Query(description="ISO-8601 range start")] = None,
    end_date: Annotated[Optional[str], Query(description="ISO-8601 range end")] = None,
    aggregation: Annotated[str, Query(description="daily, weekly or monthly")] = "daily",
    topic: Annotated[Optional[str], Query(description="Filter by topic")] = None,
    db: Session = Depends(get_db),
) -> ReportResponse:
    """
    Delivery statistics for messages created between start_date and end_date.
    """
    if not start_date:
        raise _bad_request("start_date is required")
    if not end_date:
        raise _bad_request("end_date is required")

    try:
        start = parse_iso8601(start_date)
    except ValueError:
        raise _bad_request(
            "Invalid start_date format. Use ISO 8601 format (e.g., 2026-01-01T00:00:00Z)"
        )
    try:
        end = parse_iso8601(end_date)
    except ValueError:
        raise _bad_request(
            "Invalid end_date format. Use ISO 8601 format (e.g., 2026-01-31T23:59:59Z)"
        )

    try:
        report = build_report(db, start, end, aggregation=aggregation, topic=topic)
    except ValidationError as e:
        raise _bad_request(str(e))
    except StoreFailure as e:
        logger.error(f"Failed to build report: {e}")
        raise _internal_error("Failed to retrieve report")

    return ReportResponse.model_validate(report)


# =============================================================================
# Device Routes
# =============================================================================

@app.put("/devices", response_model=SuccessResponse, responses={401: {"model": ErrorResponse}})
def update_device_topics(
    request: Request,
    payload: DeviceConfigRequest,
    x_device_key: Annotated[Optional[str], Header(alias="X-Device-Key")] = None,
    db: Session = Depends(get_db),
) -> SuccessResponse:
    """
    Replace the calling device's topic subscriptions.

    An unknown device key registers a new device.
    """
    device_key = _require_device_key(request, x_device_key)

    try:
        device = resolve_device(db, device_key)
        topics = set_device_topics(db, device.id, payload.topics)
    except StoreFailure as e:
        logger.error(f"Failed to update device topics: {e}")
        raise _internal_error("Failed to update device topics")

    log_request_data(request, device_id=device.id, topics=len(topics))
    return SuccessResponse(message="Device configuration updated")


@app.get("/devices", response_model=DeviceResponse, responses={401: {"model": ErrorResponse}})
def get_device(
    request: Request,
    x_device_key: Annotated[Optional[str], Header(alias="X-Device-Key")] = None,
    db: Session = Depends(get_db),
) -> DeviceResponse:
    """Return the calling device and its topic subscriptions."""
    device_key = _require_device_key(request, x_device_key)

    try:
        device = resolve_device(db, device_key)
        topics = get_device_topics(db, device.id)
    except StoreFailure as e:
        logger.error(f"Failed to retrieve device: {e}")
        raise _internal_error("Failed to retrieve device")

    log_request_data(request, device_id=device.id)
    return DeviceResponse(
        device_key=device.device_key,
        name=device.name,
        topics=topics,
        last_poll_at=device.last_poll_at,
    )


# =============================================================================
# Gateway Routes
# =============================================================================

@app.get("/gateway/poll", response_model=PollResponse, responses={401: {"model": ErrorResponse}})
def poll_messages(
    request: Request,
    x_device_key: Annotated[Optional[str], Header(alias="X-Device-Key")] = None,
    db: Session = Depends(get_db),
) -> PollResponse:
    """
    Hand the next batch (at most 10) of pending messages to the device.

    Messages are claimed for the device; polling again before reporting
    their status returns them again.
    """
    device_key = _require_device_key(request, x_device_key)

    try:
        messages = poll_for_device(db, device_key)
    except StoreFailure as e:
        logger.error(f"Failed to poll messages: {e}")
        raise _internal_error("Failed to retrieve pending messages")

    log_request_data(request, delivered=len(messages))
    return PollResponse(messages=[PollMessage.model_validate(m) for m in messages])


@app.put(
    "/gateway/status/{message_id}",
    response_model=SuccessResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
def report_message_status(
    request: Request,
    message_id: str,
    payload: StatusUpdateRequest,
    x_device_key: Annotated[Optional[str], Header(alias="X-Device-Key")] = None,
    db: Session = Depends(get_db),
) -> SuccessResponse:
    """
    Report the outcome of a delivery attempt.

    status must be "sent" or "failed"; a failed report without a reason
    is stored as "Unknown error".
    """
    device_key = _require_device_key(request, x_device_key)
    log_request_data(request, message_id=message_id)

    try:
        device = resolve_device(db, device_key)
        log_request_data(request, device_id=device.id)
        update_message_status(db, message_id, payload.status, payload.reason)
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValidationError:
        raise _bad_request("Invalid status. Must be one of: sent, failed")
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    except StoreFailure as e:
        logger.error(f"Failed to update message status: {e}")
        raise _internal_error("Failed to update message status")

    record_status_update(payload.status)
    log_request_data(request, result=payload.status)
    return SuccessResponse(message="Message status updated")


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
