"""
TutorMeter - PostgreSQL Metering Store

MeteringStore backed by asyncpg.

Multi-record writes run in one transaction on one connection. Gated
writes first ensure the (subscriber, month) ledger row exists and lock it
with SELECT ... FOR UPDATE, so concurrent admissions for the same
subscriber serialize on that row. Usage writes take that lock before
touching session_metrics whether gated or not.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ..core.errors import PlanNotFoundError, SessionExistsError, SessionNotFoundError
from ..observability.logging import get_logger
from .connection import DatabasePool
from .models import (
    LedgerTotals,
    MessageDraft,
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
from .schema import apply_schema
from .store import Admission, MeteringStore

logger = get_logger(__name__)

_SESSION_SELECT = """
    SELECT
        s.id, s.subscriber_id, s.external_session_id, s.model, s.status,
        s.start_time, s.end_time, s.duration_seconds,
        m.session_id, m.input_tokens, m.output_tokens, m.total_tokens,
        m.cost_input, m.cost_output, m.cost_total, m.pricing_snapshot, m.updated_at
    FROM sessions s
    LEFT JOIN session_metrics m ON m.session_id = s.id
"""

_LEDGER_UPSERT = """
    INSERT INTO quota_ledger (subscriber_id, year_month, tokens_used, sessions_count, updated_at)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (subscriber_id, year_month) DO UPDATE SET
        tokens_used = quota_ledger.tokens_used + EXCLUDED.tokens_used,
        sessions_count = quota_ledger.sessions_count + EXCLUDED.sessions_count,
        updated_at = EXCLUDED.updated_at
    RETURNING *
"""

_ACTIVE_PLAN = """
    SELECT p.*
    FROM subscriptions s
    JOIN plans p ON p.id = s.plan_id
    WHERE s.subscriber_id = $1
      AND s.is_active
      AND s.start_date <= $2
      AND (s.end_date IS NULL OR s.end_date > $2)
    ORDER BY s.start_date DESC
    LIMIT 1
"""


def _session_from_record(record) -> Session:
    metrics = None
    if record["session_id"] is not None:
        metrics = SessionMetrics.from_record(record)
    return Session.from_record(record, metrics=metrics)


class PostgresMeteringStore(MeteringStore):
    """
    asyncpg-backed store.

    Usage:
        store = PostgresMeteringStore(DatabasePool(dsn))
        await store.connect()   # opens the pool and applies the schema
    """

    def __init__(self, db: DatabasePool, create_schema: bool = True):
        self.db = db
        self.create_schema = create_schema

    async def connect(self) -> None:
        await self.db.connect()
        if self.create_schema:
            async with self.db.acquire() as conn:
                await apply_schema(conn)
        logger.info("PostgreSQL metering store connected", pool_max_size=self.db.max_size)

    async def close(self) -> None:
        await self.db.close()

    async def ping(self) -> bool:
        return await self.db.fetchval("SELECT 1") == 1

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
        query = """
            INSERT INTO plans (name, monthly_token_limit, monthly_session_limit, cost_per_token, is_active)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        record = await self.db.fetchrow(
            query, name, monthly_token_limit, monthly_session_limit, cost_per_token, is_active
        )
        return Plan.from_record(record)

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        record = await self.db.fetchrow("SELECT * FROM plans WHERE id = $1", plan_id)
        return Plan.from_record(record) if record else None

    async def create_subscription(
        self,
        subscriber_id: str,
        plan_id: int,
        start_date: datetime,
        end_date: Optional[datetime] = None,
    ) -> Subscription:
        async with self.db.transaction() as conn:
            if await conn.fetchval("SELECT 1 FROM plans WHERE id = $1", plan_id) is None:
                raise PlanNotFoundError(plan_id)

            await conn.execute(
                """
                UPDATE subscriptions SET is_active = FALSE
                WHERE subscriber_id = $1 AND is_active
                """,
                subscriber_id,
            )
            record = await conn.fetchrow(
                """
                INSERT INTO subscriptions (subscriber_id, plan_id, is_active, start_date, end_date)
                VALUES ($1, $2, TRUE, $3, $4)
                RETURNING *
                """,
                subscriber_id, plan_id, start_date, end_date,
            )
            return Subscription.from_record(record)

    async def get_active_subscription(self, subscriber_id: str, now: datetime) -> Optional[Subscription]:
        query = """
            SELECT * FROM subscriptions
            WHERE subscriber_id = $1
              AND is_active
              AND start_date <= $2
              AND (end_date IS NULL OR end_date > $2)
            ORDER BY start_date DESC
            LIMIT 1
        """
        record = await self.db.fetchrow(query, subscriber_id, now)
        return Subscription.from_record(record) if record else None

    async def get_active_plan(self, subscriber_id: str, now: datetime) -> Optional[Plan]:
        record = await self.db.fetchrow(_ACTIVE_PLAN, subscriber_id, now)
        return Plan.from_record(record) if record else None

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
        query = """
            INSERT INTO pricing (model, input_per_1m, output_per_1m, effective_from, is_active)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        record = await self.db.fetchrow(
            query, model, Decimal(input_per_1m), Decimal(output_per_1m), effective_from, is_active
        )
        return PricingRow.from_record(record)

    async def get_effective_pricing(self, model: str, now: datetime) -> Optional[PricingRow]:
        query = """
            SELECT * FROM pricing
            WHERE model = $1 AND is_active AND effective_from <= $2
            ORDER BY effective_from DESC, id DESC
            LIMIT 1
        """
        record = await self.db.fetchrow(query, model, now)
        return PricingRow.from_record(record) if record else None

    # ------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------

    async def get_ledger(self, subscriber_id: str, year_month: str) -> Optional[LedgerTotals]:
        record = await self.db.fetchrow(
            "SELECT * FROM quota_ledger WHERE subscriber_id = $1 AND year_month = $2",
            subscriber_id, year_month,
        )
        return LedgerTotals.from_record(record) if record else None

    async def add_ledger_usage(
        self,
        subscriber_id: str,
        year_month: str,
        tokens_delta: int,
        sessions_delta: int,
        now: datetime,
    ) -> LedgerTotals:
        record = await self.db.fetchrow(
            _LEDGER_UPSERT, subscriber_id, year_month, tokens_delta, sessions_delta, now
        )
        return LedgerTotals.from_record(record)

    async def _lock_ledger_row(self, conn, subscriber_id: str, year_month: str, now: datetime) -> LedgerTotals:
        """Create the month's row if needed, then hold its row lock until commit."""
        await conn.execute(
            """
            INSERT INTO quota_ledger (subscriber_id, year_month, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (subscriber_id, year_month) DO NOTHING
            """,
            subscriber_id, year_month, now,
        )
        record = await conn.fetchrow(
            """
            SELECT * FROM quota_ledger
            WHERE subscriber_id = $1 AND year_month = $2
            FOR UPDATE
            """,
            subscriber_id, year_month,
        )
        return LedgerTotals.from_record(record)

    async def _decide(self, conn, admission: Admission, current: LedgerTotals, now: datetime):
        plan_record = await conn.fetchrow(_ACTIVE_PLAN, current.subscriber_id, now)
        plan = Plan.from_record(plan_record) if plan_record else None
        return admission(plan, current)

    async def _admit(self, conn, admission: Admission, subscriber_id: str, year_month: str, now: datetime):
        current = await self._lock_ledger_row(conn, subscriber_id, year_month, now)
        return current, await self._decide(conn, admission, current, now)

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
        async with self.db.transaction() as conn:
            decision = None
            if admission is not None:
                current, decision = await self._admit(conn, admission, subscriber_id, year_month, now)
                if not decision.allowed:
                    return SessionWrite(session=None, ledger=current, decision=decision)

            session_record = await conn.fetchrow(
                """
                INSERT INTO sessions (subscriber_id, external_session_id, model, status, start_time)
                VALUES ($1, $2, $3, 'active', $4)
                ON CONFLICT (external_session_id) DO NOTHING
                RETURNING *
                """,
                subscriber_id, external_session_id, model, now,
            )
            if session_record is None:
                # Raising rolls back the ledger row possibly created by _admit
                raise SessionExistsError(external_session_id)

            metrics_record = await conn.fetchrow(
                """
                INSERT INTO session_metrics (session_id, updated_at)
                VALUES ($1, $2)
                RETURNING *
                """,
                session_record["id"], now,
            )
            ledger_record = await conn.fetchrow(
                _LEDGER_UPSERT, subscriber_id, year_month, 0, 1, now
            )

            session = Session.from_record(
                session_record, metrics=SessionMetrics.from_record(metrics_record)
            )
            return SessionWrite(
                session=session,
                ledger=LedgerTotals.from_record(ledger_record),
                decision=decision,
            )

    async def _fetch_session(self, conn, external_session_id: str) -> Optional[Session]:
        record = await conn.fetchrow(
            _SESSION_SELECT + " WHERE s.external_session_id = $1", external_session_id
        )
        return _session_from_record(record) if record else None

    async def get_session(self, external_session_id: str) -> Optional[Session]:
        async with self.db.acquire() as conn:
            return await self._fetch_session(conn, external_session_id)

    async def list_sessions(
        self,
        subscriber_id: str,
        status: Optional[SessionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Session]:
        query = _SESSION_SELECT + """
            WHERE s.subscriber_id = $1
              AND ($2::text IS NULL OR s.status = $2::text)
            ORDER BY s.start_time DESC, s.id DESC
            LIMIT $3 OFFSET $4
        """
        records = await self.db.fetch(
            query, subscriber_id, status.value if status else None, limit, offset
        )
        return [_session_from_record(r) for r in records]

    async def finalize_session(self, external_session_id: str, now: datetime) -> SessionClose:
        async with self.db.transaction() as conn:
            # Only an active session transitions; a closed one keeps its end time
            closed_id = await conn.fetchval(
                """
                UPDATE sessions SET
                    status = 'completed',
                    end_time = $2::timestamptz,
                    duration_seconds = GREATEST(
                        0, FLOOR(EXTRACT(EPOCH FROM ($2::timestamptz - start_time)))
                    )::INTEGER
                WHERE external_session_id = $1 AND status = 'active'
                RETURNING id
                """,
                external_session_id, now,
            )
            session = await self._fetch_session(conn, external_session_id)
            return SessionClose(session=session, closed=closed_id is not None)

    async def expire_stale_sessions(self, cutoff: datetime) -> List[Session]:
        async with self.db.transaction() as conn:
            expired_ids = await conn.fetch(
                """
                WITH stale AS (
                    SELECT s.id, COALESCE(m.updated_at, s.start_time) AS last_activity
                    FROM sessions s
                    LEFT JOIN session_metrics m ON m.session_id = s.id
                    WHERE s.status = 'active'
                      AND COALESCE(m.updated_at, s.start_time) < $1
                    FOR UPDATE OF s SKIP LOCKED
                )
                UPDATE sessions s SET
                    status = 'abandoned',
                    end_time = stale.last_activity,
                    duration_seconds = GREATEST(
                        0, FLOOR(EXTRACT(EPOCH FROM (stale.last_activity - s.start_time)))
                    )::INTEGER
                FROM stale
                WHERE s.id = stale.id
                RETURNING s.external_session_id
                """,
                cutoff,
            )
            if not expired_ids:
                return []

            records = await conn.fetch(
                _SESSION_SELECT + " WHERE s.external_session_id = ANY($1::text[]) ORDER BY s.id",
                [r["external_session_id"] for r in expired_ids],
            )
            return [_session_from_record(r) for r in records]

    # ------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------

    async def _fetch_metrics(self, conn, session_id: int) -> Optional[SessionMetrics]:
        record = await conn.fetchrow("SELECT * FROM session_metrics WHERE session_id = $1", session_id)
        return SessionMetrics.from_record(record) if record else None

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

        async with self.db.transaction() as conn:
            if delta.event_key:
                seen = await conn.fetchval(
                    "SELECT 1 FROM usage_events WHERE session_id = $1 AND event_key = $2",
                    session.id, delta.event_key,
                )
                if seen:
                    return UsageWrite(
                        metrics=await self._fetch_metrics(conn, session.id),
                        ledger=None,
                        duplicate=True,
                    )

            # Lock order for every usage write: quota_ledger row, then
            # session_metrics row
            current = await self._lock_ledger_row(conn, subscriber_id, year_month, now)

            decision = None
            if admission is not None:
                decision = await self._decide(conn, admission, current, now)
                if not decision.allowed:
                    return UsageWrite(metrics=None, ledger=current, decision=decision)

            # The partial unique index settles races between concurrent duplicates
            event_record = await conn.fetchrow(
                """
                INSERT INTO usage_events (
                    session_id, subscriber_id, channel, event_key,
                    input_tokens, output_tokens, cost_total, event_data, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
                ON CONFLICT (session_id, event_key) WHERE event_key IS NOT NULL DO NOTHING
                RETURNING *
                """,
                session.id, subscriber_id, delta.channel, delta.event_key,
                delta.input_tokens, delta.output_tokens, delta.cost_total,
                json.dumps(delta.event_data, default=str), now,
            )
            if event_record is None:
                return UsageWrite(
                    metrics=await self._fetch_metrics(conn, session.id),
                    ledger=None,
                    duplicate=True,
                )

            metrics_record = await conn.fetchrow(
                """
                UPDATE session_metrics SET
                    input_tokens = input_tokens + $2,
                    output_tokens = output_tokens + $3,
                    total_tokens = total_tokens + $2 + $3,
                    cost_input = cost_input + $4,
                    cost_output = cost_output + $5,
                    cost_total = cost_total + $4 + $5,
                    pricing_snapshot = $6::jsonb,
                    updated_at = $7
                WHERE session_id = $1
                RETURNING *
                """,
                session.id, delta.input_tokens, delta.output_tokens,
                delta.cost_input, delta.cost_output,
                json.dumps(delta.pricing_snapshot), now,
            )
            if metrics_record is None:
                raise SessionNotFoundError(session.external_session_id)

            ledger_record = await conn.fetchrow(
                _LEDGER_UPSERT, subscriber_id, year_month, delta.total_tokens, 0, now
            )

            return UsageWrite(
                metrics=SessionMetrics.from_record(metrics_record),
                ledger=LedgerTotals.from_record(ledger_record),
                decision=decision,
                event=UsageEvent.from_record(event_record),
            )

    async def list_usage_events(self, external_session_id: str) -> List[UsageEvent]:
        records = await self.db.fetch(
            """
            SELECT e.* FROM usage_events e
            JOIN sessions s ON s.id = e.session_id
            WHERE s.external_session_id = $1
            ORDER BY e.id
            """,
            external_session_id,
        )
        return [UsageEvent.from_record(r) for r in records]

    # ------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------

    async def add_message(self, session: Session, draft: MessageDraft, now: datetime) -> TranscriptMessage:
        async with self.db.transaction() as conn:
            # Serializes sequence numbering within the session
            await conn.execute("SELECT 1 FROM sessions WHERE id = $1 FOR NO KEY UPDATE", session.id)
            sequence_number = await conn.fetchval(
                "SELECT COALESCE(MAX(sequence_number), 0) + 1 FROM transcript_messages WHERE session_id = $1",
                session.id,
            )
            record = await conn.fetchrow(
                """
                INSERT INTO transcript_messages (
                    session_id, subscriber_id, role, content, message_type, event_type,
                    event_data, sequence_number, input_tokens, output_tokens, total_tokens,
                    cost_total, usage_event_key, attributes, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13, $14::jsonb, $15)
                RETURNING *
                """,
                session.id, session.subscriber_id, draft.role.value, draft.content,
                draft.message_type, draft.event_type,
                json.dumps(draft.event_data, default=str) if draft.event_data else None,
                sequence_number, draft.input_tokens, draft.output_tokens,
                draft.input_tokens + draft.output_tokens, draft.cost_total,
                draft.usage_event_key, json.dumps(draft.attributes, default=str), now,
            )
            return TranscriptMessage.from_record(record)

    async def list_messages(self, session: Session, limit: int = 1000, offset: int = 0) -> List[TranscriptMessage]:
        records = await self.db.fetch(
            """
            SELECT * FROM transcript_messages
            WHERE session_id = $1
            ORDER BY sequence_number
            LIMIT $2 OFFSET $3
            """,
            session.id, limit, offset,
        )
        return [TranscriptMessage.from_record(r) for r in records]

    async def get_transcript_stats(self, session: Session) -> TranscriptStats:
        record = await self.db.fetchrow(
            """
            SELECT
                COUNT(*) AS total_messages,
                COUNT(*) FILTER (WHERE role = 'user') AS user_messages,
                COUNT(*) FILTER (WHERE role = 'assistant') AS assistant_messages,
                COALESCE(SUM(input_tokens), 0)::BIGINT AS total_input_tokens,
                COALESCE(SUM(output_tokens), 0)::BIGINT AS total_output_tokens,
                COALESCE(SUM(total_tokens), 0)::BIGINT AS total_tokens,
                COALESCE(SUM(cost_total), 0) AS total_cost,
                MIN(created_at) AS first_message_at,
                MAX(created_at) AS last_message_at
            FROM transcript_messages
            WHERE session_id = $1
            """,
            session.id,
        )
        return TranscriptStats.from_record(record)
