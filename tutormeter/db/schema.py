"""
TutorMeter - PostgreSQL Schema

DDL for the metering tables. Every statement is idempotent, so
apply_schema() can run on each startup.
"""

from typing import List

SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS plans (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        monthly_token_limit BIGINT,
        monthly_session_limit INTEGER,
        cost_per_token NUMERIC(14, 8),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id BIGSERIAL PRIMARY KEY,
        subscriber_id TEXT NOT NULL,
        plan_id BIGINT NOT NULL REFERENCES plans(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        start_date TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        end_date TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # At most one active subscription per subscriber
    """
    CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_one_active_idx
        ON subscriptions (subscriber_id) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id BIGSERIAL PRIMARY KEY,
        subscriber_id TEXT NOT NULL,
        external_session_id TEXT NOT NULL UNIQUE,
        model TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'completed', 'abandoned')),
        start_time TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        end_time TIMESTAMPTZ,
        duration_seconds INTEGER
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS sessions_subscriber_idx
        ON sessions (subscriber_id, start_time DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS sessions_active_idx
        ON sessions (start_time) WHERE status = 'active'
    """,
    """
    CREATE TABLE IF NOT EXISTS session_metrics (
        session_id BIGINT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
        input_tokens BIGINT NOT NULL DEFAULT 0,
        output_tokens BIGINT NOT NULL DEFAULT 0,
        total_tokens BIGINT NOT NULL DEFAULT 0,
        cost_input NUMERIC(18, 6) NOT NULL DEFAULT 0,
        cost_output NUMERIC(18, 6) NOT NULL DEFAULT 0,
        cost_total NUMERIC(18, 6) NOT NULL DEFAULT 0,
        pricing_snapshot JSONB,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_ledger (
        subscriber_id TEXT NOT NULL,
        year_month CHAR(7) NOT NULL,
        tokens_used BIGINT NOT NULL DEFAULT 0,
        sessions_count INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (subscriber_id, year_month)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pricing (
        id BIGSERIAL PRIMARY KEY,
        model TEXT NOT NULL,
        effective_from TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        input_per_1m NUMERIC(12, 6) NOT NULL,
        output_per_1m NUMERIC(12, 6) NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS pricing_model_effective_idx
        ON pricing (model, effective_from DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_events (
        id BIGSERIAL PRIMARY KEY,
        session_id BIGINT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        subscriber_id TEXT NOT NULL,
        channel TEXT NOT NULL,
        event_key TEXT,
        input_tokens BIGINT NOT NULL DEFAULT 0,
        output_tokens BIGINT NOT NULL DEFAULT 0,
        cost_total NUMERIC(18, 6) NOT NULL DEFAULT 0,
        event_data JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS usage_events_session_key_idx
        ON usage_events (session_id, event_key) WHERE event_key IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS transcript_messages (
        id BIGSERIAL PRIMARY KEY,
        session_id BIGINT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        subscriber_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
        content TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        event_type TEXT,
        event_data JSONB,
        sequence_number INTEGER NOT NULL,
        input_tokens BIGINT NOT NULL DEFAULT 0,
        output_tokens BIGINT NOT NULL DEFAULT 0,
        total_tokens BIGINT NOT NULL DEFAULT 0,
        cost_total NUMERIC(18, 6) NOT NULL DEFAULT 0,
        usage_event_key TEXT,
        attributes JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (session_id, sequence_number)
    )
    """,
]


async def apply_schema(conn) -> None:
    """Create all metering tables and indexes on an asyncpg connection."""
    async with conn.transaction():
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
