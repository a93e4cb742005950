"""
Message ledger: storage of queued messages and their lifecycle.

Status moves from pending to one of the terminal states sent or failed.
Reporting the same terminal status again succeeds and refreshes its
timestamp; switching from one terminal state to the other is rejected.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from sms_gateway.dedup import is_duplicate
from sms_gateway.errors import (
    DuplicateMessage,
    InvalidStatus,
    InvalidTransition,
    NotFound,
    StoreFailure,
    ValidationError,
)
from sms_gateway.models import (
    MESSAGE_STATUSES,
    STATUS_PENDING,
    STATUS_SENT,
    TERMINAL_STATUSES,
    Message,
)
from sms_gateway.utils import generate_message_id, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Unknown error"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class MessageFilters:
    """Independently optional filters for listing messages."""
    topic: Optional[str] = None
    to_number: Optional[str] = None
    keyword: Optional[str] = None
    status: Optional[str] = None


def normalize_pagination(page: Optional[int], limit: Optional[int]) -> Tuple[int, int, int]:
    """
    Clamp page/limit to sane values and derive the offset.

    Returns:
        Tuple of (page, limit, offset)
    """
    if not limit or limit < 1:
        limit = DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)
    if not page or page < 1:
        page = 1
    return page, limit, (page - 1) * limit


def total_pages(total: int, limit: int) -> int:
    return int(math.ceil(total / limit)) if limit else 0


def create_message(
    db: Session,
    topic: str,
    to_number: str,
    body: str,
    now: Optional[datetime] = None,
) -> Message:
    """
    Queue a new pending message.

    The dedup check and the insert run in the same session transaction.

    Args:
        db: Database session
        topic: Routing topic
        to_number: Destination number
        body: Message text

    Returns:
        The created Message

    Raises:
        ValidationError: a required field is blank
        DuplicateMessage: identical (to_number, body) inside the dedup window
        StoreFailure: the insert failed
    """
    for field, value in (("topic", topic), ("to_number", to_number), ("body", body)):
        if not value or not value.strip():
            raise ValidationError(f"{field} is required")

    now = now or utcnow()
    logger.info(f"Creating message: topic={topic}, to={to_number}")

    if is_duplicate(db, to_number, body, now=now):
        raise DuplicateMessage(
            f"duplicate message: same message was sent to {to_number} "
            "within the deduplication interval"
        )

    message = Message(
        id=generate_message_id(),
        topic=topic,
        to_number=to_number,
        body=body,
        status=STATUS_PENDING,
        created_at=now,
    )
    try:
        db.add(message)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message for {to_number}: {e}")
        raise StoreFailure(f"failed to create message: {e}") from e

    logger.info(f"Message queued: {message.id}")
    return message


def get_message_by_id(db: Session, message_id: str):
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    logger.debug(f"Looking up message by ID: {message_id}")
    try:
        return db.get(Message, message_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to get message: {e}") from e


def update_message_status(
    db: Session,
    message_id: str,
    status: str,
    reason: Optional[str] = None,
) -> None:
    """
    Move a message to a terminal state.

    One conditional UPDATE that matches the row only while it is pending or
    already in the requested status.

    Args:
        db: Database session
        message_id: Message to update
        status: "sent" or "failed"
        reason: Failure reason; defaults to "Unknown error" for failed

    Raises:
        InvalidStatus: status is not sent/failed
        NotFound: no message with this id
        InvalidTransition: message is already in the other terminal state
    """
    if status not in TERMINAL_STATUSES:
        raise InvalidStatus("invalid status: must be 'sent' or 'failed'")

    now = utcnow()
    if status == STATUS_SENT:
        values = {
            Message.status: status,
            Message.sent_at: now,
        }
    else:
        if not reason or not reason.strip():
            reason = DEFAULT_FAILURE_REASON
        values = {
            Message.status: status,
            Message.failed_at: now,
            Message.failure_reason: reason,
        }

    logger.info(f"Updating message {message_id} status to {status}")
    try:
        updated = (
            db.query(Message)
            .filter(
                Message.id == message_id,
                Message.status.in_([STATUS_PENDING, status]),
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to update message status: {e}") from e

    if updated:
        # Drop any stale copy loaded earlier in this session
        db.expire_all()
        return

    current = get_message_by_id(db, message_id)
    if current is None:
        raise NotFound(f"message {message_id} not found")
    raise InvalidTransition(
        f"message {message_id} is already {current.status}, cannot mark as {status}"
    )


def _apply_filters(query: Query, filters: MessageFilters) -> Query:
    if filters.status and filters.status not in MESSAGE_STATUSES:
        raise ValidationError(
            "Invalid status value. Must be one of: pending, sent, failed"
        )

    if filters.topic:
        query = query.filter(Message.topic == filters.topic)

    if filters.to_number:
        query = query.filter(Message.to_number == filters.to_number)

    if filters.keyword:
        # Case-insensitive substring search
        query = query.filter(Message.body.icontains(filters.keyword, autoescape=True))

    if filters.status:
        query = query.filter(Message.status == filters.status)

    return query


def get_messages(
    db: Session,
    filters: Optional[MessageFilters] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[Message]:
    """
    Retrieve messages, newest first, with filtering and pagination.
    """
    filters = filters or MessageFilters()
    logger.debug(f"Querying messages: filters={filters}, limit={limit}, offset={offset}")

    query = _apply_filters(db.query(Message), filters)
    query = query.order_by(Message.created_at.desc(), Message.id.asc())
    try:
        messages = query.offset(offset).limit(limit).all()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to query messages: {e}") from e

    logger.info(f"Retrieved {len(messages)} messages")
    return messages


def count_messages(db: Session, filters: Optional[MessageFilters] = None) -> int:
    """Count messages matching the filters, ignoring pagination."""
    filters = filters or MessageFilters()
    query = _apply_filters(db.query(Message), filters)
    try:
        return query.count()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to count messages: {e}") from e
