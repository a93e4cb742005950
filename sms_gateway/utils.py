"""
Utility functions for the SMS gateway.
"""

import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

MESSAGE_ID_PREFIX = "msg_"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso8601(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp (a trailing 'Z' is accepted for UTC).

    Raises:
        ValueError: if the value is not a valid ISO-8601 timestamp
    """
    return to_naive_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


def generate_message_id() -> str:
    """
    Generate a fresh, globally unique message identifier.

    Returns:
        Identifier of the form msg_<32 hex chars>
    """
    message_id = f"{MESSAGE_ID_PREFIX}{uuid.uuid4().hex}"
    logger.debug(f"Generated message id: {message_id}")
    return message_id
