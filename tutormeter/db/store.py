"""
TutorMeter - Metering Store Contract

Abstract persistence contract shared by the PostgreSQL and in-memory stores.

Every write that touches more than one record is a single store call, so
each backend can make it atomic in its own way (a database transaction or
a per-key asyncio.Lock). Callers wrap store calls in `guarded()` to bound
their latency and map driver failures onto the error taxonomy.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import asyncpg

from ..core.errors import MeteringException, StoreTimeoutError, StoreUnavailableError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .models import (
    LedgerTotals,
    MessageDraft,
    Plan,
    PricingRow,
    Session,
    SessionClose,
    SessionStatus,
    SessionWrite,
    Subscription,
    TranscriptMessage,
    TranscriptStats,
    UsageDelta,
    UsageEvent,
    UsageWrite,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Called inside the locked section with the subscriber's current plan (None
# when there is no active subscription) and the locked ledger row. Returns
# a decision object exposing `.allowed`.
Admission = Callable[[Optional[Plan], LedgerTotals], Any]


async def guarded(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """
    Await a store call under a deadline.

    - asyncio timeout -> StoreTimeoutError
    - asyncpg / OS level failures -> StoreUnavailableError
    - MeteringException passes through unchanged
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except MeteringException:
        raise
    except asyncio.TimeoutError:
        get_metrics().record_store_error(operation, "timeout")
        logger.warning("Store call timed out", operation=operation, timeout_seconds=timeout)
        raise StoreTimeoutError(operation, timeout)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        get_metrics().record_store_error(operation, "unavailable")
        logger.error("Store call failed", operation=operation, error=str(e), error_type=type(e).__name__)
        raise StoreUnavailableError(operation, type(e).__name__) from e


class MeteringStore(ABC):
    """Persistence contract for plans, subscriptions, sessions, ledger and pricing."""

    async def connect(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    async def ping(self) -> bool:
        """Liveness check used by /health."""
        return True

    # ------------------------------------------------------------
    # Plans & subscriptions
    # ------------------------------------------------------------

    @abstractmethod
    async def create_plan(
        self,
        name: str,
        monthly_token_limit: Optional[int] = None,
        monthly_session_limit: Optional[int] = None,
        cost_per_token: Optional[Decimal] = None,
        is_active: bool = True,
    ) -> Plan:
        ...

    @abstractmethod
    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        ...

    @abstractmethod
    async def create_subscription(
        self,
        subscriber_id: str,
        plan_id: int,
        start_date: datetime,
        end_date: Optional[datetime] = None,
    ) -> Subscription:
        """Create an active subscription, deactivating prior ones atomically."""

    @abstractmethod
    async def get_active_subscription(self, subscriber_id: str, now: datetime) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def get_active_plan(self, subscriber_id: str, now: datetime) -> Optional[Plan]:
        """Plan of the subscriber's current subscription, if any."""

    # ------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------

    @abstractmethod
    async def add_pricing_row(
        self,
        model: str,
        input_per_1m: Decimal,
        output_per_1m: Decimal,
        effective_from: datetime,
        is_active: bool = True,
    ) -> PricingRow:
        ...

    @abstractmethod
    async def get_effective_pricing(self, model: str, now: datetime) -> Optional[PricingRow]:
        """Latest active row for `model` whose effective_from <= now."""

    # ------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------

    @abstractmethod
    async def get_ledger(self, subscriber_id: str, year_month: str) -> Optional[LedgerTotals]:
        """Read-only; never creates a row."""

    @abstractmethod
    async def add_ledger_usage(
        self,
        subscriber_id: str,
        year_month: str,
        tokens_delta: int,
        sessions_delta: int,
        now: datetime,
    ) -> LedgerTotals:
        """Atomic increment-or-insert; returns the post-update totals."""

    # ------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------

    @abstractmethod
    async def create_session(
        self,
        subscriber_id: str,
        external_session_id: str,
        model: str,
        *,
        year_month: str,
        now: datetime,
        admission: Optional[Admission] = None,
    ) -> SessionWrite:
        """
        Insert an active session with zero metrics and debit one session
        unit, all or nothing.

        With `admission`, the ledger row is locked first and the insert only
        happens when the decision allows it. Raises SessionExistsError on a
        duplicate external id; the ledger is then left untouched.
        """

    @abstractmethod
    async def get_session(self, external_session_id: str) -> Optional[Session]:
        """Session with its metrics attached."""

    @abstractmethod
    async def list_sessions(
        self,
        subscriber_id: str,
        status: Optional[SessionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Session]:
        """Newest first."""

    @abstractmethod
    async def finalize_session(self, external_session_id: str, now: datetime) -> SessionClose:
        """
        Close an active session as completed.

        A session that is already closed comes back unchanged with
        closed=False; session is None if it does not exist.
        """

    @abstractmethod
    async def expire_stale_sessions(self, cutoff: datetime) -> List[Session]:
        """Mark active sessions whose last activity is before `cutoff` abandoned."""

    # ------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------

    @abstractmethod
    async def apply_usage(
        self,
        session: Session,
        delta: UsageDelta,
        *,
        year_month: str,
        now: datetime,
        admission: Optional[Admission] = None,
    ) -> UsageWrite:
        """
        Record the usage event, add the delta to the session metrics and add
        its token sum to the owner's ledger, all or nothing.

        A delta whose event_key was already applied to the session changes
        nothing and comes back with duplicate=True. With `admission` the
        ledger row is locked and a denied delta writes nothing.
        """

    @abstractmethod
    async def list_usage_events(self, external_session_id: str) -> List[UsageEvent]:
        ...

    # ------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------

    @abstractmethod
    async def add_message(self, session: Session, draft: MessageDraft, now: datetime) -> TranscriptMessage:
        """Append a message with the session's next sequence number (1-based)."""

    @abstractmethod
    async def list_messages(self, session: Session, limit: int = 1000, offset: int = 0) -> List[TranscriptMessage]:
        """Oldest first, by sequence number."""

    @abstractmethod
    async def get_transcript_stats(self, session: Session) -> TranscriptStats:
        ...


def session_duration(session: Session, end_time: datetime) -> int:
    """Whole seconds between start and `end_time`, never negative."""
    if session.start_time is None:
        return 0
    return max(0, int((end_time - session.start_time).total_seconds()))
