"""
TutorMeter - API Request/Response Models

Pydantic models for API validation and serialization.
Costs are serialized as decimal strings so no precision is lost.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..db.models import (
    MessageRole,
    Session,
    SessionMetrics,
    SessionStatus,
    TranscriptMessage,
    TranscriptStats,
)


# ============================================================
# Requests
# ============================================================

class CreateSessionRequest(BaseModel):
    """Start a metered session."""
    session_id: str = Field(..., min_length=1, max_length=255, description="Caller-chosen session id")
    model: Optional[str] = Field(default=None, min_length=1, max_length=128)

    @field_validator("session_id")
    @classmethod
    def strip_session_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("session_id cannot be blank")
        return v


class UsageReportRequest(BaseModel):
    """Token deltas observed since the previous report."""
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    event_key: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Idempotency key; a repeated key for the same session is ignored",
    )
    event_data: Dict[str, Any] = Field(default_factory=dict)
    enforce_limit: bool = False

    model_config = ConfigDict(extra="forbid")


class SaveMessageRequest(BaseModel):
    """A transcript message, optionally with the transport event that produced it."""
    role: MessageRole
    content: str = Field(..., min_length=1)
    message_type: str = Field(default="text", min_length=1, max_length=64)
    event_type: Optional[str] = Field(default=None, max_length=128)
    event_data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Transport event; usage found in it is metered on the transcript channel",
    )
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content cannot be blank")
        return v


# ============================================================
# Responses
# ============================================================

class SessionMetricsResponse(BaseModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_input: str
    cost_output: str
    cost_total: str
    pricing: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_metrics(cls, metrics: SessionMetrics) -> "SessionMetricsResponse":
        return cls(
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            total_tokens=metrics.total_tokens,
            cost_input=str(metrics.cost_input),
            cost_output=str(metrics.cost_output),
            cost_total=str(metrics.cost_total),
            pricing=metrics.pricing_snapshot,
            updated_at=metrics.updated_at,
        )


class SessionResponse(BaseModel):
    object: Literal["session"] = "session"
    id: str
    subscriber_id: str
    model: str
    status: SessionStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    metrics: Optional[SessionMetricsResponse] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.external_session_id,
            subscriber_id=session.subscriber_id,
            model=session.model,
            status=session.status,
            start_time=session.start_time,
            end_time=session.end_time,
            duration_seconds=session.duration_seconds,
            metrics=SessionMetricsResponse.from_metrics(session.metrics) if session.metrics else None,
        )


class SessionListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: List[SessionResponse]
    limit: int
    offset: int


class LimitCheckResponse(BaseModel):
    allowed: bool
    kind: str
    current: int
    limit: Optional[int] = None
    requested: int
    remaining: Optional[int] = None
    reason: Optional[str] = None
    warning: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    store_backend: str
    store: Literal["ok", "unavailable"]


class TranscriptMessageResponse(BaseModel):
    object: Literal["transcript.message"] = "transcript.message"
    id: int
    role: MessageRole
    content: str
    sequence_number: int
    message_type: str
    event_type: Optional[str] = None
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_total: str
    usage_event_key: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_message(cls, message: TranscriptMessage) -> "TranscriptMessageResponse":
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            sequence_number=message.sequence_number,
            message_type=message.message_type,
            event_type=message.event_type,
            input_tokens=message.input_tokens,
            output_tokens=message.output_tokens,
            total_tokens=message.total_tokens,
            cost_total=str(message.cost_total),
            usage_event_key=message.usage_event_key,
            attributes=message.attributes,
            created_at=message.created_at,
        )


class TranscriptListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: List[TranscriptMessageResponse]
    limit: int
    offset: int


class TranscriptStatsResponse(BaseModel):
    object: Literal["transcript.stats"] = "transcript.stats"
    session_id: str
    total_messages: int
    user_messages: int
    assistant_messages: int
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    total_cost: str
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    @classmethod
    def from_stats(cls, session_id: str, stats: TranscriptStats) -> "TranscriptStatsResponse":
        return cls(
            session_id=session_id,
            total_messages=stats.total_messages,
            user_messages=stats.user_messages,
            assistant_messages=stats.assistant_messages,
            total_input_tokens=stats.total_input_tokens,
            total_output_tokens=stats.total_output_tokens,
            total_tokens=stats.total_tokens,
            total_cost=str(stats.total_cost),
            first_message_at=stats.first_message_at,
            last_message_at=stats.last_message_at,
        )
