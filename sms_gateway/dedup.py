"""
Time-windowed duplicate suppression for inbound submissions.

A submission is a duplicate when a message with the same destination and
body was created within the trailing window. The check runs before the
insert and is not backed by a uniqueness constraint, so two identical
submissions racing each other can both pass.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_gateway.config import settings
from sms_gateway.errors import StoreFailure
from sms_gateway.models import Message
from sms_gateway.utils import utcnow

logger = logging.getLogger(__name__)


def get_dedup_window() -> timedelta:
    """Configured deduplication window (already validated by Settings)."""
    return timedelta(minutes=settings.DEDUPLICATION_INTERVAL_MINUTES)


def find_duplicate(
    db: Session,
    to_number: str,
    body: str,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
):
    """
    Find the most recent message matching (to_number, body) in the window.

    Args:
        db: Database session
        to_number: Destination number
        body: Message body (exact match)
        now: Reference time, defaults to the current UTC time
        window: Window length, defaults to the configured interval

    Returns:
        The matching Message, or None
    """
    now = now or utcnow()
    window = window if window is not None else get_dedup_window()
    cutoff = now - window
    logger.debug(f"Dedup check for {to_number}: window={window}, cutoff={cutoff}")

    try:
        return (
            db.query(Message)
            .filter(
                Message.to_number == to_number,
                Message.body == body,
                Message.created_at >= cutoff,
                Message.created_at <= now,
            )
            .order_by(Message.created_at.desc())
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to check for duplicate message: {e}") from e


def is_duplicate(
    db: Session,
    to_number: str,
    body: str,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
) -> bool:
    """True iff an identical (to_number, body) was accepted within the window."""
    existing = find_duplicate(db, to_number, body, now=now, window=window)
    if existing is not None:
        logger.info(f"Duplicate of message {existing.id} detected for {to_number}")
        return True
    return False
