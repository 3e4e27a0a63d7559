"""
TutorMeter - Core Module

Shared error taxonomy for the metering core.
"""

from .errors import (
    ErrorType,
    ErrorDetails,
    MeteringException,
    SemanticError,
    NotFoundError,
    SessionNotFoundError,
    SubscriptionNotFoundError,
    PlanNotFoundError,
    ConflictError,
    SessionExistsError,
    InvalidUsageError,
    InternalError,
    ServiceUnavailableError,
    StoreUnavailableError,
    StoreTimeoutError,
    LedgerCorruptionError,
    PricingConfigurationError,
    is_retryable,
)

__all__ = [
    "ErrorType",
    "ErrorDetails",
    "MeteringException",
    "SemanticError",
    "NotFoundError",
    "SessionNotFoundError",
    "SubscriptionNotFoundError",
    "PlanNotFoundError",
    "ConflictError",
    "SessionExistsError",
    "InvalidUsageError",
    "InternalError",
    "ServiceUnavailableError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "LedgerCorruptionError",
    "PricingConfigurationError",
    "is_retryable",
]
