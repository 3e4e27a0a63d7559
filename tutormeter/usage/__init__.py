"""
TutorMeter - Usage Metering Module

Session metering and monthly quota enforcement:
- Pricing: model prices and per-report cost
- Ledger: monthly counters per subscriber
- Limits: allow/deny decisions against plan limits
- Sessions: session lifecycle with session-unit debit
- Ingestor: additive, idempotent token accumulation
- Transcripts: saved conversation messages and the usage they carry
- Service: wiring of the above around one store
"""

from .pricing import (
    CostBreakdown,
    ModelPricing,
    PricingResolver,
    PricingSource,
    PricingTable,
    calculate_cost,
)
from .ledger import QuotaLedger, current_year_month, utc_now
from .limits import (
    LimitCheckResult,
    LimitGate,
    LimitKind,
    UsageSummary,
    decide_sessions,
    decide_tokens,
)
from .sessions import SessionAdmission, SessionManager
from .ingestor import UsageChannel, UsageIngestor, UsageObservation, UsageOutcome
from .transcripts import SavedMessage, TranscriptRecorder
from .service import MeteringService, create_store

__all__ = [
    # Pricing
    "CostBreakdown",
    "ModelPricing",
    "PricingResolver",
    "PricingSource",
    "PricingTable",
    "calculate_cost",
    # Ledger
    "QuotaLedger",
    "current_year_month",
    "utc_now",
    # Limits
    "LimitCheckResult",
    "LimitGate",
    "LimitKind",
    "UsageSummary",
    "decide_sessions",
    "decide_tokens",
    # Sessions
    "SessionAdmission",
    "SessionManager",
    # Ingestion
    "UsageChannel",
    "UsageIngestor",
    "UsageObservation",
    "UsageOutcome",
    # Transcripts
    "SavedMessage",
    "TranscriptRecorder",
    # Wiring
    "MeteringService",
    "create_store",
]
