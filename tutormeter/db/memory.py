"""
TutorMeter - In-Memory Metering Store

Process-local MeteringStore used for local mode and tests.

Writes that span several records run under a per-(subscriber, month)
asyncio.Lock and validate everything before mutating, so a failed call
leaves no partial state behind.
"""

import asyncio
import copy
import weakref
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from ..core.errors import SessionExistsError, SessionNotFoundError, PlanNotFoundError
from .models import (
    LedgerTotals,
    MessageDraft,
    MessageRole,
    Plan,
    PricingRow,
    Session,
    SessionClose,
    SessionMetrics,
    SessionStatus,
    SessionWrite,
    Subscription,
    TranscriptMessage,
    TranscriptStats,
    UsageDelta,
    UsageEvent,
    UsageWrite,
)
from .store import Admission, MeteringStore, session_duration


class InMemoryMeteringStore(MeteringStore):
    """
    Dictionary-backed store.

    Args:
        latency: Seconds to sleep inside every call. Lets tests widen race
            windows and exercise store timeouts.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency

        self._plans: Dict[int, Plan] = {}
        self._subscriptions: List[Subscription] = []
        self._pricing: List[PricingRow] = []
        self._ledger: Dict[Tuple[str, str], LedgerTotals] = {}
        self._sessions: Dict[str, Session] = {}
        self._events: Dict[int, List[UsageEvent]] = defaultdict(list)
        self._event_keys: Set[Tuple[int, str]] = set()
        self._messages: Dict[int, List[TranscriptMessage]] = defaultdict(list)

        # An entry lives only while some call holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._next_ids: Dict[str, int] = defaultdict(int)

    def _next_id(self, kind: str) -> int:
        self._next_ids[kind] += 1
        return self._next_ids[kind]

    async def _pause(self) -> None:
        await asyncio.sleep(self.latency)

    def _lock_for(self, subscriber_id: str, year_month: str) -> asyncio.Lock:
        key = (subscriber_id, year_month)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------
    # Plans & subscriptions
    # ------------------------------------------------------------

    async def create_plan(
        self,
        name: str,
        monthly_token_limit: Optional[int] = None,
        monthly_session_limit: Optional[int] = None,
        cost_per_token: Optional[Decimal] = None,
        is_active: bool = True,
    ) -> Plan:
        await self._pause()
        now = datetime.now(timezone.utc)
        plan = Plan(
            id=self._next_id("plan"),
            name=name,
            monthly_token_limit=monthly_token_limit,
            monthly_session_limit=monthly_session_limit,
            cost_per_token=cost_per_token,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        self._plans[plan.id] = plan
        return copy.copy(plan)

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        await self._pause()
        plan = self._plans.get(plan_id)
        return copy.copy(plan) if plan else None

    async def create_subscription(
        self,
        subscriber_id: str,
        plan_id: int,
        start_date: datetime,
        end_date: Optional[datetime] = None,
    ) -> Subscription:
        await self._pause()
        if plan_id not in self._plans:
            raise PlanNotFoundError(plan_id)

        for existing in self._subscriptions:
            if existing.subscriber_id == subscriber_id:
                existing.is_active = False

        subscription = Subscription(
            id=self._next_id("subscription"),
            subscriber_id=subscriber_id,
            plan_id=plan_id,
            is_active=True,
            start_date=start_date,
            end_date=end_date,
            created_at=datetime.now(timezone.utc),
        )
        self._subscriptions.append(subscription)
        return copy.copy(subscription)

    def _current_subscription(self, subscriber_id: str, now: datetime) -> Optional[Subscription]:
        for subscription in reversed(self._subscriptions):
            if subscription.subscriber_id == subscriber_id and subscription.is_current(now):
                return subscription
        return None

    def _current_plan(self, subscriber_id: str, now: datetime) -> Optional[Plan]:
        subscription = self._current_subscription(subscriber_id, now)
        if subscription is None:
            return None
        return self._plans.get(subscription.plan_id)

    async def get_active_subscription(self, subscriber_id: str, now: datetime) -> Optional[Subscription]:
        await self._pause()
        subscription = self._current_subscription(subscriber_id, now)
        return copy.copy(subscription) if subscription else None

    async def get_active_plan(self, subscriber_id: str, now: datetime) -> Optional[Plan]:
        await self._pause()
        plan = self._current_plan(subscriber_id, now)
        return copy.copy(plan) if plan else None

    # ------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------

    async def add_pricing_row(
        self,
        model: str,
        input_per_1m: Decimal,
        output_per_1m: Decimal,
        effective_from: datetime,
        is_active: bool = True,
    ) -> PricingRow:
        await self._pause()
        row = PricingRow(
            id=self._next_id("pricing"),
            model=model,
            input_per_1m=Decimal(input_per_1m),
            output_per_1m=Decimal(output_per_1m),
            effective_from=effective_from,
            is_active=is_active,
        )
        self._pricing.append(row)
        return copy.copy(row)

    async def get_effective_pricing(self, model: str, now: datetime) -> Optional[PricingRow]:
        await self._pause()
        candidates = [
            row for row in self._pricing
            if row.model == model and row.is_active and row.effective_from <= now
        ]
        if not candidates:
            return None
        # Latest effective_from wins; ties go to the newest row
        best = max(candidates, key=lambda row: (row.effective_from, row.id))
        return copy.copy(best)

    # ------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------

    def _ledger_row(self, subscriber_id: str, year_month: str) -> LedgerTotals:
        row = self._ledger.get((subscriber_id, year_month))
        if row is None:
            return LedgerTotals.empty(subscriber_id, year_month)
        return copy.copy(row)

    def _bump_ledger(
        self,
        subscriber_id: str,
        year_month: str,
        tokens_delta: int,
        sessions_delta: int,
        now: datetime,
    ) -> LedgerTotals:
        row = self._ledger.get((subscriber_id, year_month))
        if row is None:
            row = LedgerTotals.empty(subscriber_id, year_month)
            self._ledger[(subscriber_id, year_month)] = row
        row.tokens_used += tokens_delta
        row.sessions_count += sessions_delta
        row.updated_at = now
        return copy.copy(row)

    async def get_ledger(self, subscriber_id: str, year_month: str) -> Optional[LedgerTotals]:
        await self._pause()
        row = self._ledger.get((subscriber_id, year_month))
        return copy.copy(row) if row else None

    async def add_ledger_usage(
        self,
        subscriber_id: str,
        year_month: str,
        tokens_delta: int,
        sessions_delta: int,
        now: datetime,
    ) -> LedgerTotals:
        async with self._lock_for(subscriber_id, year_month):
            await self._pause()
            return self._bump_ledger(subscriber_id, year_month, tokens_delta, sessions_delta, now)

    # ------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------

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
        async with self._lock_for(subscriber_id, year_month):
            decision = None
            if admission is not None:
                current = self._ledger_row(subscriber_id, year_month)
                decision = admission(self._current_plan(subscriber_id, now), current)
                if not decision.allowed:
                    return SessionWrite(session=None, ledger=current, decision=decision)

            await self._pause()

            if external_session_id in self._sessions:
                raise SessionExistsError(external_session_id)

            session_id = self._next_id("session")
            session = Session(
                id=session_id,
                subscriber_id=subscriber_id,
                external_session_id=external_session_id,
                model=model,
                status=SessionStatus.ACTIVE,
                start_time=now,
                metrics=SessionMetrics(session_id=session_id, updated_at=now),
            )
            self._sessions[external_session_id] = session
            ledger = self._bump_ledger(subscriber_id, year_month, 0, 1, now)

            return SessionWrite(session=copy.deepcopy(session), ledger=ledger, decision=decision)

    async def get_session(self, external_session_id: str) -> Optional[Session]:
        await self._pause()
        session = self._sessions.get(external_session_id)
        return copy.deepcopy(session) if session else None

    async def list_sessions(
        self,
        subscriber_id: str,
        status: Optional[SessionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Session]:
        await self._pause()
        matches = [
            s for s in self._sessions.values()
            if s.subscriber_id == subscriber_id and (status is None or s.status == status)
        ]
        matches.sort(key=lambda s: (s.start_time, s.id), reverse=True)
        return [copy.deepcopy(s) for s in matches[offset:offset + limit]]

    async def finalize_session(self, external_session_id: str, now: datetime) -> SessionClose:
        await self._pause()
        session = self._sessions.get(external_session_id)
        if session is None:
            return SessionClose(session=None)
        closed = session.is_active
        if closed:
            session.status = SessionStatus.COMPLETED
            session.end_time = now
            session.duration_seconds = session_duration(session, now)
        return SessionClose(session=copy.deepcopy(session), closed=closed)

    async def expire_stale_sessions(self, cutoff: datetime) -> List[Session]:
        await self._pause()
        expired = []
        for session in self._sessions.values():
            if not session.is_active:
                continue
            last_activity = session.last_activity
            if last_activity is None or last_activity >= cutoff:
                continue
            session.status = SessionStatus.ABANDONED
            session.end_time = last_activity
            session.duration_seconds = session_duration(session, last_activity)
            expired.append(copy.deepcopy(session))
        return expired

    # ------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------

    async def apply_usage(
        self,
        session: Session,
        delta: UsageDelta,
        *,
        year_month: str,
        now: datetime,
        admission: Optional[Admission] = None,
    ) -> UsageWrite:
        subscriber_id = session.subscriber_id

        async with self._lock_for(subscriber_id, year_month):
            stored = self._sessions.get(session.external_session_id)
            if stored is None:
                raise SessionNotFoundError(session.external_session_id)

            if delta.event_key and (stored.id, delta.event_key) in self._event_keys:
                return UsageWrite(metrics=copy.deepcopy(stored.metrics), ledger=None, duplicate=True)

            decision = None
            if admission is not None:
                current = self._ledger_row(subscriber_id, year_month)
                decision = admission(self._current_plan(subscriber_id, now), current)
                if not decision.allowed:
                    return UsageWrite(metrics=None, ledger=current, decision=decision)

            await self._pause()

            # Same key may have landed from another month's lock while paused
            if delta.event_key and (stored.id, delta.event_key) in self._event_keys:
                return UsageWrite(metrics=copy.deepcopy(stored.metrics), ledger=None, duplicate=True)

            event = UsageEvent(
                id=self._next_id("event"),
                session_id=stored.id,
                subscriber_id=subscriber_id,
                channel=delta.channel,
                input_tokens=delta.input_tokens,
                output_tokens=delta.output_tokens,
                cost_total=delta.cost_total,
                event_key=delta.event_key,
                event_data=dict(delta.event_data),
                created_at=now,
            )
            self._events[stored.id].append(event)
            if delta.event_key:
                self._event_keys.add((stored.id, delta.event_key))

            metrics = stored.metrics
            metrics.input_tokens += delta.input_tokens
            metrics.output_tokens += delta.output_tokens
            metrics.total_tokens = metrics.input_tokens + metrics.output_tokens
            metrics.cost_input += delta.cost_input
            metrics.cost_output += delta.cost_output
            metrics.cost_total = metrics.cost_input + metrics.cost_output
            metrics.pricing_snapshot = dict(delta.pricing_snapshot)
            metrics.updated_at = now

            ledger = self._bump_ledger(subscriber_id, year_month, delta.total_tokens, 0, now)

            return UsageWrite(
                metrics=copy.deepcopy(metrics),
                ledger=ledger,
                decision=decision,
                event=copy.deepcopy(event),
            )

    async def list_usage_events(self, external_session_id: str) -> List[UsageEvent]:
        await self._pause()
        session = self._sessions.get(external_session_id)
        if session is None:
            return []
        return [copy.deepcopy(e) for e in self._events[session.id]]

    # ------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------

    async def add_message(self, session: Session, draft: MessageDraft, now: datetime) -> TranscriptMessage:
        await self._pause()
        stored = self._sessions.get(session.external_session_id)
        if stored is None:
            raise SessionNotFoundError(session.external_session_id)

        messages = self._messages[stored.id]
        message = TranscriptMessage(
            id=self._next_id("message"),
            session_id=stored.id,
            subscriber_id=stored.subscriber_id,
            role=draft.role,
            content=draft.content,
            sequence_number=len(messages) + 1,
            message_type=draft.message_type,
            event_type=draft.event_type,
            event_data=dict(draft.event_data),
            input_tokens=draft.input_tokens,
            output_tokens=draft.output_tokens,
            total_tokens=draft.input_tokens + draft.output_tokens,
            cost_total=draft.cost_total,
            usage_event_key=draft.usage_event_key,
            attributes=dict(draft.attributes),
            created_at=now,
        )
        messages.append(message)
        return copy.deepcopy(message)

    async def list_messages(self, session: Session, limit: int = 1000, offset: int = 0) -> List[TranscriptMessage]:
        await self._pause()
        return [copy.deepcopy(m) for m in self._messages.get(session.id, [])[offset:offset + limit]]

    async def get_transcript_stats(self, session: Session) -> TranscriptStats:
        await self._pause()
        messages = self._messages.get(session.id, [])
        if not messages:
            return TranscriptStats()
        return TranscriptStats(
            total_messages=len(messages),
            user_messages=sum(1 for m in messages if m.role == MessageRole.USER),
            assistant_messages=sum(1 for m in messages if m.role == MessageRole.ASSISTANT),
            total_input_tokens=sum(m.input_tokens for m in messages),
            total_output_tokens=sum(m.output_tokens for m in messages),
            total_tokens=sum(m.total_tokens for m in messages),
            total_cost=sum((m.cost_total for m in messages), Decimal("0")),
            first_message_at=min(m.created_at for m in messages),
            last_message_at=max(m.created_at for m in messages),
        )
