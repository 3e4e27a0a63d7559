"""
TutorMeter - Usage Event Ingestor

Accumulates token usage reported for a session into its metrics and into
the owner's monthly ledger.

Usage arrives over more than one channel (the metrics API, forwarded
realtime transport events and usage embedded in saved transcript
messages), possibly more than once. Reports are deltas
and are applied additively. A report carrying an event key is applied at
most once per session; a report without one is applied every time it is
received, so exactly-once delivery is then the caller's job.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.errors import InvalidUsageError
from ..db.models import LedgerTotals, SessionMetrics, UsageDelta
from ..db.store import MeteringStore, guarded
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import trace_operation
from .ledger import current_year_month, utc_now
from .limits import LimitCheckResult, LimitGate
from .pricing import CostBreakdown, PricingResolver
from .sessions import SessionManager

logger = get_logger(__name__)


class UsageChannel(str, Enum):
    """Path a usage report travelled."""
    METRICS_API = "metrics_api"
    REALTIME_EVENTS = "realtime_events"
    TRANSCRIPT = "transcript"


def _as_token_count(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidUsageError(f"{name} must be an integer", param=name)
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise InvalidUsageError(f"{name} must be an integer", param=name)
    if count < 0:
        raise InvalidUsageError(f"{name} must be non-negative", param=name)
    return count


@dataclass
class UsageObservation:
    """Token deltas extracted from one forwarded transport event."""
    input_tokens: int
    output_tokens: int
    event_key: Optional[str] = None
    event_type: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_realtime_event(cls, event: Dict[str, Any]) -> Optional["UsageObservation"]:
        """
        Extract usage from a realtime transport event.

        Looks at `usage` (input transcription events), then
        `response.usage` (response.done), then top-level
        `input_tokens` / `output_tokens`. Returns None for events that
        carry no usage at all.

        The event key is the response id, else the item id, else the
        event id, so the same response reported twice is applied once.
        """
        if not isinstance(event, dict):
            raise InvalidUsageError("Realtime event must be a JSON object", param="event")

        response = event.get("response") if isinstance(event.get("response"), dict) else {}

        usage = None
        if isinstance(event.get("usage"), dict):
            usage = event["usage"]
        elif isinstance(response.get("usage"), dict):
            usage = response["usage"]
        elif "input_tokens" in event or "output_tokens" in event:
            usage = event

        if usage is None:
            return None

        event_key = response.get("id") or event.get("item_id") or event.get("event_id")

        return cls(
            input_tokens=_as_token_count(usage.get("input_tokens"), "input_tokens"),
            output_tokens=_as_token_count(usage.get("output_tokens"), "output_tokens"),
            event_key=str(event_key) if event_key else None,
            event_type=event.get("type"),
            raw=event,
        )


@dataclass
class UsageOutcome:
    """Result of a usage report."""
    session_id: str
    allowed: bool = True
    duplicate: bool = False
    cost: Optional[CostBreakdown] = None
    metrics: Optional[SessionMetrics] = None
    ledger: Optional[LedgerTotals] = None
    decision: Optional[LimitCheckResult] = None

    @property
    def applied(self) -> bool:
        return self.allowed and not self.duplicate

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "session_id": self.session_id,
            "applied": self.applied,
            "allowed": self.allowed,
            "duplicate": self.duplicate,
        }
        if self.cost is not None and self.applied:
            result["cost"] = self.cost.to_dict()
        if self.metrics is not None:
            result["metrics"] = self.metrics.to_dict()
        if self.ledger is not None:
            result["ledger"] = {
                "year_month": self.ledger.year_month,
                "tokens_used": self.ledger.tokens_used,
                "sessions_count": self.ledger.sessions_count,
            }
        if self.decision is not None:
            result["decision"] = self.decision.to_dict()
        return result


class UsageIngestor:
    """
    Applies usage reports to session metrics and the quota ledger.

    Usage:
        outcome = await ingestor.record_usage("sess-42", 1000, 500, event_key="resp_1")
        if outcome.duplicate:
            ...
    """

    def __init__(
        self,
        store: MeteringStore,
        sessions: SessionManager,
        pricing: PricingResolver,
        gate: LimitGate,
        *,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.sessions = sessions
        self.pricing = pricing
        self.gate = gate
        self.clock = clock
        self.store_timeout = store_timeout

    async def record_usage(
        self,
        external_session_id: str,
        input_tokens_delta: int,
        output_tokens_delta: int,
        *,
        event_key: Optional[str] = None,
        channel: UsageChannel = UsageChannel.METRICS_API,
        event_data: Optional[Dict[str, Any]] = None,
        enforce_limit: bool = False,
    ) -> UsageOutcome:
        """
        Add a usage delta to a session.

        Metrics, ledger and the usage event are written together or not at
        all. With enforce_limit, a report that would push the owner past the
        monthly token limit is rejected whole (allowed=False).

        Raises:
            SessionNotFoundError: Unknown session.
            InvalidUsageError: Negative or non-integer deltas.
            PricingConfigurationError: No price for the session's model.
        """
        input_tokens = _as_token_count(input_tokens_delta, "input_tokens")
        output_tokens = _as_token_count(output_tokens_delta, "output_tokens")
        channel = UsageChannel(channel)

        session = await self.sessions.get(external_session_id)
        pricing = await self.pricing.resolve(session.model)
        cost = self.pricing.cost(input_tokens, output_tokens, pricing)

        delta = UsageDelta(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_input=cost.input,
            cost_output=cost.output,
            channel=channel.value,
            pricing_snapshot=pricing.to_snapshot(),
            event_key=event_key or None,
            event_data=event_data or {},
        )

        admission = None
        if enforce_limit:
            admission = self.gate.token_admission(delta.total_tokens)

        now = self.clock()
        with trace_operation(
            "ingestor.record_usage",
            session_id=external_session_id,
            subscriber_id=session.subscriber_id,
            channel=channel.value,
        ) as span:
            write = await guarded(
                self.store.apply_usage(
                    session,
                    delta,
                    year_month=current_year_month(now),
                    now=now,
                    admission=admission,
                ),
                timeout=self.store_timeout,
                operation="ingestor.record_usage",
            )
            span.set_attribute("tutormeter.duplicate", write.duplicate)

        metrics = get_metrics()

        if write.duplicate:
            metrics.record_duplicate_usage(channel.value)
            logger.info(
                "Duplicate usage report ignored",
                session_id=external_session_id,
                event_key=event_key,
                channel=channel.value,
            )
            return UsageOutcome(
                session_id=external_session_id,
                duplicate=True,
                metrics=write.metrics,
            )

        if write.decision is not None:
            self.gate.record_decision(session.subscriber_id, write.decision)
            if not write.decision.allowed:
                return UsageOutcome(
                    session_id=external_session_id,
                    allowed=False,
                    ledger=write.ledger,
                    decision=write.decision,
                )

        write.ledger.verify()
        metrics.record_tokens(session.model, channel.value, input_tokens, output_tokens)
        metrics.record_cost(session.model, cost.total)

        logger.info(
            "Usage recorded",
            session_id=external_session_id,
            subscriber_id=session.subscriber_id,
            channel=channel.value,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=str(cost.total),
            total_tokens=write.metrics.total_tokens,
            tokens_used=write.ledger.tokens_used,
        )

        return UsageOutcome(
            session_id=external_session_id,
            cost=cost,
            metrics=write.metrics,
            ledger=write.ledger,
            decision=write.decision,
        )

    async def record_observation(
        self,
        external_session_id: str,
        observation: UsageObservation,
        *,
        channel: UsageChannel = UsageChannel.REALTIME_EVENTS,
        enforce_limit: bool = False,
    ) -> UsageOutcome:
        """Apply a UsageObservation extracted from a transport event."""
        event_data = {"type": observation.event_type} if observation.event_type else {}
        event_data["event"] = observation.raw
        return await self.record_usage(
            external_session_id,
            observation.input_tokens,
            observation.output_tokens,
            event_key=observation.event_key,
            channel=channel,
            event_data=event_data,
            enforce_limit=enforce_limit,
        )
