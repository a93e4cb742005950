"""
Distribution engine: hands pending messages to polling devices.

A poll selects up to POLL_BATCH_SIZE pending messages on the device's
topics that are unassigned or already assigned to that device, oldest
first, then claims them with one conditional UPDATE guarded by
``assigned_device_id IS NULL``. The guard is the only mutual exclusion:
a row taken by another device between select and claim is left alone,
so no message is ever assigned to two devices.

By default the selection is returned even when part of the claim lost a
race. With strict claims enabled the rows are re-read after the claim and
only those owned by the caller are returned.
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_gateway.config import settings
from sms_gateway.devices import get_device_topics, mark_polled, resolve_device
from sms_gateway.errors import StoreFailure
from sms_gateway.metrics import record_device_poll, record_messages_claimed
from sms_gateway.models import STATUS_PENDING, Message

logger = logging.getLogger(__name__)

POLL_BATCH_SIZE = 10


def select_pending_messages(
    db: Session,
    device_id: int,
    topics: Sequence[str],
    limit: int = POLL_BATCH_SIZE,
) -> List[Message]:
    """
    Select pending messages a device may receive, oldest first.

    Messages claimed by another device are excluded; messages this device
    claimed on an earlier poll are included again.
    """
    if not topics:
        return []

    try:
        return (
            db.query(Message)
            .filter(
                Message.status == STATUS_PENDING,
                Message.topic.in_(list(topics)),
                or_(
                    Message.assigned_device_id.is_(None),
                    Message.assigned_device_id == device_id,
                ),
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to query pending messages: {e}") from e


def claim_messages(db: Session, device_id: int, message_ids: Sequence[str]) -> int:
    """
    Assign still-unclaimed messages to a device.

    Returns:
        Number of rows this call actually claimed
    """
    if not message_ids:
        return 0

    try:
        claimed = (
            db.query(Message)
            .filter(
                Message.id.in_(list(message_ids)),
                Message.assigned_device_id.is_(None),
            )
            .update({Message.assigned_device_id: device_id}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to update message assignments: {e}") from e

    logger.debug(f"Device {device_id} claimed {claimed} of {len(message_ids)} message(s)")
    return claimed


def poll_pending_messages(
    db: Session,
    device_id: int,
    topics: Sequence[str],
    strict: Optional[bool] = None,
) -> List[Message]:
    """
    Select and claim the next batch of messages for a device.

    Args:
        db: Database session
        device_id: Polling device
        topics: Topics the device subscribes to
        strict: Filter out rows lost to a concurrent claim; defaults to the
            POLL_STRICT_CLAIMS setting

    Returns:
        The messages handed to the device
    """
    if not topics:
        logger.debug(f"Device {device_id} has no topics, nothing to deliver")
        return []

    if strict is None:
        strict = settings.POLL_STRICT_CLAIMS

    messages = select_pending_messages(db, device_id, topics)
    if not messages:
        return []

    ids = [m.id for m in messages]
    claimed = claim_messages(db, device_id, ids)
    record_messages_claimed(claimed)

    if strict:
        try:
            messages = (
                db.query(Message)
                .filter(Message.id.in_(ids), Message.assigned_device_id == device_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreFailure(f"failed to re-read claimed messages: {e}") from e

    logger.info(f"Delivering {len(messages)} message(s) to device {device_id}")
    return messages


def poll_for_device(db: Session, device_key: str) -> List[Message]:
    """
    Full poll for a device key: resolve, fetch topics, claim, stamp poll time.

    Failing to record the poll time is logged and does not affect the
    returned messages.
    """
    device = resolve_device(db, device_key)
    device_id = device.id
    topics = get_device_topics(db, device_id)
    messages = poll_pending_messages(db, device_id, topics)

    if not mark_polled(db, device_id):
        logger.warning(f"Poll time not recorded for device {device_id}")
    record_device_poll(len(messages))
    return messages
