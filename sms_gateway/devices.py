"""
Device registry: device keys, topic subscriptions and poll bookkeeping.

A device key is an opaque bearer identifier. Presenting an unknown key
registers a new device (find-or-create), so there is no separate
registration step.
"""

import logging
from typing import Iterable, List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sms_gateway.errors import NotFound, StoreFailure, ValidationError
from sms_gateway.models import Device, DeviceTopic
from sms_gateway.utils import utcnow

logger = logging.getLogger(__name__)


def get_device_by_key(db: Session, device_key: str):
    """
    Retrieve a device by its key.

    Returns:
        Device object if found, None otherwise
    """
    try:
        return db.query(Device).filter(Device.device_key == device_key).first()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to get device: {e}") from e


def resolve_device(db: Session, device_key: str) -> Device:
    """
    Look up a device by key, creating it on first use.

    Concurrent first use of the same key is settled by the unique constraint
    on device_key: the loser rolls back and reads the winner's row.

    Args:
        db: Database session
        device_key: Opaque, case-sensitive device key

    Returns:
        The existing or newly created Device
    """
    if not device_key or not device_key.strip():
        raise ValidationError("device key is required")

    device = get_device_by_key(db, device_key)
    if device is not None:
        logger.debug(f"Resolved device: id={device.id}")
        return device

    logger.info("Unknown device key, registering new device")
    now = utcnow()
    device = Device(device_key=device_key, created_at=now, updated_at=now)
    try:
        db.add(device)
        db.commit()
        db.refresh(device)
        logger.info(f"Device registered: id={device.id}")
        return device
    except IntegrityError:
        # Another request registered the same key first
        db.rollback()
        logger.info("Device key registered concurrently, re-reading")
        device = get_device_by_key(db, device_key)
        if device is None:
            raise StoreFailure("failed to create device: key vanished after conflict")
        return device
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to create device: {e}") from e


def get_device_topics(db: Session, device_id: int) -> List[str]:
    """
    Get the topics a device subscribes to, sorted lexicographically.
    """
    try:
        rows = (
            db.query(DeviceTopic.topic)
            .filter(DeviceTopic.device_id == device_id)
            .order_by(DeviceTopic.topic.asc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to query device topics: {e}") from e

    topics = [row.topic for row in rows]
    logger.debug(f"Device {device_id} topics: {topics}")
    return topics


def set_device_topics(db: Session, device_id: int, topics: Iterable[str]) -> List[str]:
    """
    Replace a device's whole subscription set in one transaction.

    Existing join rows are deleted and the new set inserted; the device's
    updated_at is bumped. Calling twice with the same set is a no-op apart
    from the timestamps.

    Args:
        db: Database session
        device_id: Device to update
        topics: Full replacement set (may be empty to clear subscriptions)

    Returns:
        The stored topics, sorted
    """
    new_topics = sorted({t.strip() for t in topics if t and t.strip()})
    logger.info(f"Setting topics for device {device_id}: {new_topics}")

    try:
        device = db.get(Device, device_id)
        if device is None:
            raise NotFound(f"device {device_id} not found")

        now = utcnow()
        db.query(DeviceTopic).filter(DeviceTopic.device_id == device_id).delete(
            synchronize_session=False
        )
        db.add_all(
            DeviceTopic(device_id=device_id, topic=topic, created_at=now)
            for topic in new_topics
        )
        device.updated_at = now
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to update device topics: {e}") from e

    logger.info(f"Device {device_id} now subscribes to {len(new_topics)} topic(s)")
    return new_topics


def mark_polled(db: Session, device_id: int) -> bool:
    """
    Record the time of a successful poll.

    Best effort: a store failure is logged and reported through the return
    value, never raised, so it cannot block delivery.

    Returns:
        True if the timestamp was stored, False otherwise
    """
    try:
        db.query(Device).filter(Device.id == device_id).update(
            {Device.last_poll_at: utcnow()}, synchronize_session=False
        )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to update last poll time for device {device_id}: {e}")
        return False
