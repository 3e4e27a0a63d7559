"""
TutorMeter - Database Layer

Metering store contract with PostgreSQL (asyncpg) and in-memory backends.
"""

from .connection import DatabasePool
from .models import (
    LedgerTotals,
    MessageDraft,
    MessageRole,
    Plan,
    PricingRow,
    Session,
    SessionMetrics,
    SessionStatus,
    Subscription,
    TranscriptMessage,
    TranscriptStats,
    UsageDelta,
    UsageEvent,
)
from .store import MeteringStore, guarded
from .memory import InMemoryMeteringStore
from .postgres import PostgresMeteringStore

__all__ = [
    "DatabasePool",
    "LedgerTotals",
    "MessageDraft",
    "MessageRole",
    "Plan",
    "PricingRow",
    "Session",
    "SessionMetrics",
    "SessionStatus",
    "Subscription",
    "TranscriptMessage",
    "TranscriptStats",
    "UsageDelta",
    "UsageEvent",
    "MeteringStore",
    "guarded",
    "InMemoryMeteringStore",
    "PostgresMeteringStore",
]
