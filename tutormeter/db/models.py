"""
TutorMeter - Database Models

Dataclass models for metering entities.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from ..core.errors import LedgerCorruptionError

ZERO = Decimal("0")


def _json_field(value: Any) -> Dict[str, Any]:
    """asyncpg hands JSONB back as text unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class SessionStatus(str, Enum):
    """Session lifecycle states."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class Plan:
    """Subscription plan. A None limit means unbounded."""

    id: int
    name: str
    monthly_token_limit: Optional[int] = None
    monthly_session_limit: Optional[int] = None
    cost_per_token: Optional[Decimal] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "Plan":
        return cls(
            id=record["id"],
            name=record["name"],
            monthly_token_limit=record["monthly_token_limit"],
            monthly_session_limit=record["monthly_session_limit"],
            cost_per_token=record["cost_per_token"],
            is_active=record["is_active"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )


@dataclass
class Subscription:
    """Binding of a subscriber to a plan."""

    id: int
    subscriber_id: str
    plan_id: int
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "Subscription":
        return cls(
            id=record["id"],
            subscriber_id=record["subscriber_id"],
            plan_id=record["plan_id"],
            is_active=record["is_active"],
            start_date=record["start_date"],
            end_date=record["end_date"],
            created_at=record["created_at"],
        )

    def is_current(self, now: datetime) -> bool:
        """Active flag set and `now` inside [start_date, end_date)."""
        if not self.is_active:
            return False
        if self.start_date is not None and self.start_date > now:
            return False
        if self.end_date is not None and self.end_date <= now:
            return False
        return True


@dataclass
class SessionMetrics:
    """Accumulated token and cost totals of one session."""

    session_id: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_input: Decimal = ZERO
    cost_output: Decimal = ZERO
    cost_total: Decimal = ZERO
    pricing_snapshot: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "SessionMetrics":
        return cls(
            session_id=record["session_id"],
            input_tokens=record["input_tokens"],
            output_tokens=record["output_tokens"],
            total_tokens=record["total_tokens"],
            cost_input=record["cost_input"],
            cost_output=record["cost_output"],
            cost_total=record["cost_total"],
            pricing_snapshot=_json_field(record["pricing_snapshot"]),
            updated_at=record["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost_input": str(self.cost_input),
            "cost_output": str(self.cost_output),
            "cost_total": str(self.cost_total),
            "pricing": self.pricing_snapshot,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Session:
    """One tutoring conversation."""

    id: int
    subscriber_id: str
    external_session_id: str
    model: str
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    metrics: Optional[SessionMetrics] = None

    @classmethod
    def from_record(cls, record, metrics: Optional[SessionMetrics] = None) -> "Session":
        return cls(
            id=record["id"],
            subscriber_id=record["subscriber_id"],
            external_session_id=record["external_session_id"],
            model=record["model"],
            status=SessionStatus(record["status"]),
            start_time=record["start_time"],
            end_time=record["end_time"],
            duration_seconds=record["duration_seconds"],
            metrics=metrics,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def last_activity(self) -> Optional[datetime]:
        """Latest metrics update, else the start time."""
        if self.metrics is not None and self.metrics.updated_at is not None:
            return self.metrics.updated_at
        return self.start_time


@dataclass
class LedgerTotals:
    """Monthly usage counters of one subscriber."""

    subscriber_id: str
    year_month: str
    tokens_used: int = 0
    sessions_count: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "LedgerTotals":
        return cls(
            subscriber_id=record["subscriber_id"],
            year_month=record["year_month"],
            tokens_used=record["tokens_used"],
            sessions_count=record["sessions_count"],
            updated_at=record["updated_at"],
        )

    @classmethod
    def empty(cls, subscriber_id: str, year_month: str) -> "LedgerTotals":
        return cls(subscriber_id=subscriber_id, year_month=year_month)

    def verify(self) -> "LedgerTotals":
        """Raise LedgerCorruptionError if a counter went negative."""
        if self.tokens_used < 0 or self.sessions_count < 0:
            raise LedgerCorruptionError(
                self.subscriber_id, self.year_month, self.tokens_used, self.sessions_count
            )
        return self


@dataclass
class PricingRow:
    """Stored price of a model, effective from a point in time."""

    id: int
    model: str
    input_per_1m: Decimal
    output_per_1m: Decimal
    effective_from: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def from_record(cls, record) -> "PricingRow":
        return cls(
            id=record["id"],
            model=record["model"],
            input_per_1m=record["input_per_1m"],
            output_per_1m=record["output_per_1m"],
            effective_from=record["effective_from"],
            is_active=record["is_active"],
        )


@dataclass
class UsageEvent:
    """Audit row for one applied usage report."""

    id: int
    session_id: int
    subscriber_id: str
    channel: str
    input_tokens: int
    output_tokens: int
    cost_total: Decimal = ZERO
    event_key: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "UsageEvent":
        return cls(
            id=record["id"],
            session_id=record["session_id"],
            subscriber_id=record["subscriber_id"],
            channel=record["channel"],
            input_tokens=record["input_tokens"],
            output_tokens=record["output_tokens"],
            cost_total=record["cost_total"],
            event_key=record["event_key"],
            event_data=_json_field(record["event_data"]),
            created_at=record["created_at"],
        )


@dataclass
class UsageDelta:
    """A priced usage report ready to be applied by a store."""

    input_tokens: int
    output_tokens: int
    cost_input: Decimal
    cost_output: Decimal
    channel: str
    pricing_snapshot: Dict[str, Any] = field(default_factory=dict)
    event_key: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cost_total(self) -> Decimal:
        return self.cost_input + self.cost_output


class MessageRole(str, Enum):
    """Speaker of a transcript message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class MessageDraft:
    """A transcript message ready to be appended by a store."""

    role: MessageRole
    content: str
    message_type: str = "text"
    event_type: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_total: Decimal = ZERO
    usage_event_key: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TranscriptMessage:
    """
    One persisted message of a session transcript.

    Token and cost figures are what this message added to the session;
    they are zero when its usage had already been reported elsewhere.
    """

    id: int
    session_id: int
    subscriber_id: str
    role: MessageRole
    content: str
    sequence_number: int
    message_type: str = "text"
    event_type: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_total: Decimal = ZERO
    usage_event_key: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "TranscriptMessage":
        return cls(
            id=record["id"],
            session_id=record["session_id"],
            subscriber_id=record["subscriber_id"],
            role=MessageRole(record["role"]),
            content=record["content"],
            sequence_number=record["sequence_number"],
            message_type=record["message_type"],
            event_type=record["event_type"],
            event_data=_json_field(record["event_data"]),
            input_tokens=record["input_tokens"],
            output_tokens=record["output_tokens"],
            total_tokens=record["total_tokens"],
            cost_total=record["cost_total"],
            usage_event_key=record["usage_event_key"],
            attributes=_json_field(record["attributes"]),
            created_at=record["created_at"],
        )


@dataclass
class TranscriptStats:
    """Aggregates over the messages of one session."""

    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost: Decimal = ZERO
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "TranscriptStats":
        return cls(
            total_messages=record["total_messages"],
            user_messages=record["user_messages"],
            assistant_messages=record["assistant_messages"],
            total_input_tokens=record["total_input_tokens"],
            total_output_tokens=record["total_output_tokens"],
            total_tokens=record["total_tokens"],
            total_cost=record["total_cost"],
            first_message_at=record["first_message_at"],
            last_message_at=record["last_message_at"],
        )


@dataclass
class SessionWrite:
    """Result of a session insert. `session` is None when admission was denied."""

    session: Optional[Session]
    ledger: LedgerTotals
    decision: Any = None


@dataclass
class SessionClose:
    """Result of finalize_session. `closed` is True only for the call that closed it."""

    session: Optional[Session]
    closed: bool = False


@dataclass
class UsageWrite:
    """Result of applying a UsageDelta."""

    metrics: Optional[SessionMetrics]
    ledger: Optional[LedgerTotals]
    duplicate: bool = False
    decision: Any = None
    event: Optional[UsageEvent] = None

    @property
    def applied(self) -> bool:
        return self.metrics is not None and not self.duplicate
