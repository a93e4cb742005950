"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class QueueMessageRequest(BaseModel):
    """
    Request body for POST /messages.

    All three fields are required and must not be blank.
    """
    topic: str = Field(..., min_length=1, max_length=255, description="Routing topic")
    to_number: str = Field(..., min_length=1, max_length=32, description="Destination number")
    body: str = Field(..., min_length=1, description="Message text")

    @field_validator("topic", "to_number", "body")
    @classmethod
    def not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} is required")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"topic": "otp", "to_number": "+14155550100", "body": "Your code is 1234"}
            ]
        }
    }


class DeviceConfigRequest(BaseModel):
    """Request body for PUT /devices: the full replacement topic set."""
    topics: list[str] = Field(..., description="Topics to subscribe to (may be empty)")

    @field_validator("topics")
    @classmethod
    def strip_topics(cls, v: list[str]) -> list[str]:
        cleaned = [t.strip() for t in v]
        if any(not t for t in cleaned):
            raise ValueError("topics must not contain blank entries")
        if any(len(t) > 255 for t in cleaned):
            raise ValueError("topics must be at most 255 characters")
        return cleaned


class StatusUpdateRequest(BaseModel):
    """Request body for PUT /gateway/status/{message_id}."""
    status: str = Field(..., min_length=1, description="sent or failed")
    reason: Optional[str] = Field(None, description="Failure reason")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SuccessResponse(BaseModel):
    message: str


class QueueMessageResponse(BaseModel):
    message: str = Field(default="Message queued successfully")
    id: str = Field(..., description="Created message id")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageDetail(BaseModel):
    """A stored message as returned by the listing endpoints."""
    id: str
    topic: str
    to_number: str
    body: str
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class PaginationInfo(BaseModel):
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1, le=100)
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages.

    Contains:
    - data: messages on the requested page, newest first
    - pagination: page, limit, total matching, total pages
    """
    data: list[MessageDetail] = Field(default_factory=list)
    pagination: PaginationInfo


class PollMessage(BaseModel):
    id: str
    to_number: str
    body: str

    model_config = {"from_attributes": True}


class PollResponse(BaseModel):
    messages: list[PollMessage] = Field(default_factory=list)


class DeviceResponse(BaseModel):
    device_key: str
    name: Optional[str] = None
    topics: list[str] = Field(default_factory=list)
    last_poll_at: Optional[datetime] = None


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime
    aggregation: str


class StatusCounts(BaseModel):
    total: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)


class TopicStats(StatusCounts):
    topic: str


class TimelineEntry(StatusCounts):
    date: str


class ReportResponse(BaseModel):
    """
    Response model for GET /reports.

    - period: requested range and aggregation
    - summary: status counts over the whole range
    - by_topic: status counts per topic, sorted by topic
    - timeline: status counts per day/week/month bucket
    """
    period: ReportPeriod
    summary: StatusCounts
    by_topic: list[TopicStats] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
