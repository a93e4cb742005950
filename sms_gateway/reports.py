"""
Delivery reports over a time range.

Summary and per-topic counts are computed in the database with portable
SQLAlchemy expressions. Timeline bucketing is done in Python so that no
backend-specific date functions are needed.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_gateway.errors import StoreFailure, ValidationError
from sms_gateway.models import STATUS_FAILED, STATUS_PENDING, STATUS_SENT, Message

logger = logging.getLogger(__name__)

AGGREGATIONS = {
    "daily": "%Y-%m-%d",
    "weekly": "%G-W%V",
    "monthly": "%Y-%m",
}


def _status_sum(status: str):
    return func.coalesce(func.sum(case((Message.status == status, 1), else_=0)), 0)


def _counts(total, sent, failed, pending) -> dict:
    return {
        "total": int(total or 0),
        "sent": int(sent or 0),
        "failed": int(failed or 0),
        "pending": int(pending or 0),
    }


def build_report(
    db: Session,
    start: datetime,
    end: datetime,
    aggregation: str = "daily",
    topic: Optional[str] = None,
) -> dict:
    """
    Build a delivery report for messages created in [start, end].

    Args:
        db: Database session
        start: Range start (naive UTC)
        end: Range end (naive UTC)
        aggregation: Timeline bucket size: daily, weekly or monthly
        topic: Optional topic filter

    Returns:
        Dictionary with period, summary, by_topic and timeline
    """
    if aggregation not in AGGREGATIONS:
        raise ValidationError("Invalid aggregation. Must be one of: daily, weekly, monthly")
    if start > end:
        raise ValidationError("start_date must not be after end_date")

    logger.info(f"Building report: {start} - {end}, aggregation={aggregation}, topic={topic}")

    conditions = [Message.created_at >= start, Message.created_at <= end]
    if topic:
        conditions.append(Message.topic == topic)

    columns = (
        func.count(Message.id),
        _status_sum(STATUS_SENT),
        _status_sum(STATUS_FAILED),
        _status_sum(STATUS_PENDING),
    )

    try:
        summary_row = db.query(*columns).filter(*conditions).one()
        topic_rows = (
            db.query(Message.topic, *columns)
            .filter(*conditions)
            .group_by(Message.topic)
            .order_by(Message.topic.asc())
            .all()
        )
        timeline_rows = (
            db.query(Message.created_at, Message.status)
            .filter(*conditions)
            .order_by(Message.created_at.asc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"failed to build report: {e}") from e

    bucket_format = AGGREGATIONS[aggregation]
    buckets: "OrderedDict[str, dict]" = OrderedDict()
    for created_at, status in timeline_rows:
        key = created_at.strftime(bucket_format)
        entry = buckets.setdefault(key, _counts(0, 0, 0, 0))
        entry["total"] += 1
        entry[status] += 1

    summary = _counts(*summary_row)
    logger.info(f"Report built: {summary['total']} messages, {len(topic_rows)} topics")

    return {
        "period": {"start": start, "end": end, "aggregation": aggregation},
        "summary": summary,
        "by_topic": [
            {"topic": row[0], **_counts(*row[1:])} for row in topic_rows
        ],
        "timeline": [{"date": key, **counts} for key, counts in buckets.items()],
    }
