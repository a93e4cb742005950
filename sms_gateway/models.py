"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sms_gateway.storage import Base
from sms_gateway.utils import utcnow


STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

MESSAGE_STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED)


class Device(Base):
    """
    A polling device, identified by an opaque caller-supplied key.

    Table: devices
    Created lazily the first time an unknown key is presented.
    """
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_key = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    last_poll_at = Column(DateTime, nullable=True, index=True)

    topics = relationship(
        "DeviceTopic",
        back_populates="device",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DeviceTopic(Base):
    """Join row between a device and one topic it subscribes to."""
    __tablename__ = "device_topics"
    __table_args__ = (
        UniqueConstraint("device_id", "topic", name="uq_device_topics_device_topic"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(
        Integer,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    topic = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    device = relationship("Device", back_populates="topics")


class Message(Base):
    """
    A queued text message and its delivery lifecycle.

    Table: messages
    status moves pending -> sent | failed; assigned_device_id is set at most
    once, by the claim step of a poll.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed')",
            name="ck_messages_status",
        ),
        Index("idx_messages_topic_status", "topic", "status"),
    )

    id = Column(String(255), primary_key=True)
    topic = Column(String(255), nullable=False)
    to_number = Column(String(32), nullable=False, index=True)
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    assigned_device_id = Column(
        Integer,
        ForeignKey("devices.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
