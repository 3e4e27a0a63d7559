"""
TutorMeter - Limit Enforcement Gate

Allow/deny decisions for prospective token and session increments against
the subscriber's monthly plan limits.

Rules:
- No current subscription: allowed with a warning when
  allow_usage_without_subscription is set, denied otherwise
- Unbounded limit (None): always allowed
- Tokens: allowed iff tokens_used + additional <= limit
- Sessions: allowed iff sessions_count < limit

Checks are pure reads and reserve nothing. A denial is a returned
LimitCheckResult, never an exception. Callers that must not race use the
admission callables with the locked store writes instead.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.errors import InvalidUsageError
from ..db.models import LedgerTotals, Plan
from ..db.store import Admission, MeteringStore, guarded
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .ledger import QuotaLedger, utc_now

logger = get_logger(__name__)

NO_SUBSCRIPTION = "no active subscription"
TOKEN_LIMIT_EXCEEDED = "monthly token limit exceeded"
SESSION_LIMIT_EXCEEDED = "monthly session limit exceeded"
NO_SUBSCRIPTION_WARNING = "no active subscription; usage allowed by configuration"


class LimitKind(str, Enum):
    TOKENS = "tokens"
    SESSIONS = "sessions"


@dataclass
class LimitCheckResult:
    """Outcome of a limit check."""
    allowed: bool
    current: int
    limit: Optional[int]
    requested: int
    kind: LimitKind = LimitKind.TOKENS
    reason: Optional[str] = None
    warning: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.current)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "allowed": self.allowed,
            "kind": self.kind.value,
            "current": self.current,
            "limit": self.limit,
            "requested": self.requested,
            "remaining": self.remaining,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.warning:
            result["warning"] = self.warning
        return result


def decide_tokens(
    plan: Optional[Plan],
    tokens_used: int,
    additional_tokens: int,
    allow_without_subscription: bool = False,
) -> LimitCheckResult:
    """Token decision for a known plan and ledger value."""
    if plan is None:
        if allow_without_subscription:
            return LimitCheckResult(
                allowed=True, current=tokens_used, limit=None, requested=additional_tokens,
                kind=LimitKind.TOKENS, warning=NO_SUBSCRIPTION_WARNING,
            )
        return LimitCheckResult(
            allowed=False, current=tokens_used, limit=None, requested=additional_tokens,
            kind=LimitKind.TOKENS, reason=NO_SUBSCRIPTION,
        )

    limit = plan.monthly_token_limit
    allowed = limit is None or tokens_used + additional_tokens <= limit
    return LimitCheckResult(
        allowed=allowed,
        current=tokens_used,
        limit=limit,
        requested=additional_tokens,
        kind=LimitKind.TOKENS,
        reason=None if allowed else TOKEN_LIMIT_EXCEEDED,
    )


def decide_sessions(
    plan: Optional[Plan],
    sessions_count: int,
    allow_without_subscription: bool = False,
) -> LimitCheckResult:
    """Session decision for a known plan and ledger value."""
    if plan is None:
        if allow_without_subscription:
            return LimitCheckResult(
                allowed=True, current=sessions_count, limit=None, requested=1,
                kind=LimitKind.SESSIONS, warning=NO_SUBSCRIPTION_WARNING,
            )
        return LimitCheckResult(
            allowed=False, current=sessions_count, limit=None, requested=1,
            kind=LimitKind.SESSIONS, reason=NO_SUBSCRIPTION,
        )

    limit = plan.monthly_session_limit
    allowed = limit is None or sessions_count < limit
    return LimitCheckResult(
        allowed=allowed,
        current=sessions_count,
        limit=limit,
        requested=1,
        kind=LimitKind.SESSIONS,
        reason=None if allowed else SESSION_LIMIT_EXCEEDED,
    )


@dataclass
class UsageSummary:
    """Current-month usage against plan limits."""
    subscriber_id: str
    year_month: str
    tokens_used: int
    sessions_count: int
    plan_id: Optional[int] = None
    plan_name: Optional[str] = None
    token_limit: Optional[int] = None
    session_limit: Optional[int] = None

    @property
    def has_subscription(self) -> bool:
        return self.plan_id is not None

    @property
    def tokens_remaining(self) -> Optional[int]:
        if self.token_limit is None:
            return None
        return max(0, self.token_limit - self.tokens_used)

    @property
    def sessions_remaining(self) -> Optional[int]:
        if self.session_limit is None:
            return None
        return max(0, self.session_limit - self.sessions_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "year_month": self.year_month,
            "has_subscription": self.has_subscription,
            "plan": {"id": self.plan_id, "name": self.plan_name} if self.has_subscription else None,
            "tokens": {
                "used": self.tokens_used,
                "limit": self.token_limit,
                "remaining": self.tokens_remaining,
            },
            "sessions": {
                "used": self.sessions_count,
                "limit": self.session_limit,
                "remaining": self.sessions_remaining,
            },
        }


class LimitGate:
    """
    Limit enforcement gate.

    Usage:
        gate = LimitGate(store, ledger, allow_usage_without_subscription=False)
        result = await gate.check_token_limit("user-1", 400)
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        store: MeteringStore,
        ledger: QuotaLedger,
        *,
        allow_usage_without_subscription: bool = False,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.ledger = ledger
        self.allow_usage_without_subscription = allow_usage_without_subscription
        self.clock = clock
        self.store_timeout = store_timeout

    async def get_active_plan(self, subscriber_id: str) -> Optional[Plan]:
        return await guarded(
            self.store.get_active_plan(subscriber_id, self.clock()),
            timeout=self.store_timeout,
            operation="limits.get_active_plan",
        )

    async def check_token_limit(self, subscriber_id: str, additional_tokens: int) -> LimitCheckResult:
        if additional_tokens < 0:
            raise InvalidUsageError("additional_tokens must be non-negative", param="additional_tokens")

        plan = await self.get_active_plan(subscriber_id)
        totals = await self.ledger.get_current(subscriber_id)
        result = decide_tokens(
            plan, totals.tokens_used, additional_tokens, self.allow_usage_without_subscription
        )
        self.record_decision(subscriber_id, result)
        return result

    async def check_session_limit(self, subscriber_id: str) -> LimitCheckResult:
        plan = await self.get_active_plan(subscriber_id)
        totals = await self.ledger.get_current(subscriber_id)
        result = decide_sessions(plan, totals.sessions_count, self.allow_usage_without_subscription)
        self.record_decision(subscriber_id, result)
        return result

    async def get_usage_summary(self, subscriber_id: str) -> UsageSummary:
        plan = await self.get_active_plan(subscriber_id)
        totals = await self.ledger.get_current(subscriber_id)
        return UsageSummary(
            subscriber_id=subscriber_id,
            year_month=totals.year_month,
            tokens_used=totals.tokens_used,
            sessions_count=totals.sessions_count,
            plan_id=plan.id if plan else None,
            plan_name=plan.name if plan else None,
            token_limit=plan.monthly_token_limit if plan else None,
            session_limit=plan.monthly_session_limit if plan else None,
        )

    def session_admission(self) -> Admission:
        """Decision callable evaluated by the store under the ledger row lock."""
        allow = self.allow_usage_without_subscription

        def admit(plan: Optional[Plan], totals: LedgerTotals) -> LimitCheckResult:
            return decide_sessions(plan, totals.verify().sessions_count, allow)

        return admit

    def token_admission(self, additional_tokens: int) -> Admission:
        allow = self.allow_usage_without_subscription

        def admit(plan: Optional[Plan], totals: LedgerTotals) -> LimitCheckResult:
            return decide_tokens(plan, totals.verify().tokens_used, additional_tokens, allow)

        return admit

    def record_decision(self, subscriber_id: str, result: LimitCheckResult) -> None:
        if not result.allowed:
            get_metrics().record_limit_denial(result.kind.value, result.reason or "denied")
            logger.info(
                "Limit check denied",
                subscriber_id=subscriber_id,
                limit_type=result.kind.value,
                current=result.current,
                limit=result.limit,
                requested=result.requested,
                reason=result.reason,
            )
        elif result.warning:
            logger.warning(
                "Limit check allowed without subscription",
                subscriber_id=subscriber_id,
                limit_type=result.kind.value,
            )
