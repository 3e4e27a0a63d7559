"""
TutorMeter - Error Definitions

Error taxonomy for the metering core with infra vs semantic classification.

- NotFound / Conflict / InvalidUsage are semantic: the caller must change the request.
- Internal errors (store unavailable, timeouts, corrupted ledger rows,
  pricing misconfiguration) are infra errors.

Quota exhaustion is deliberately NOT an exception. The limit gate returns
a decision value (LimitCheckResult.allowed=False) that callers act upon.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    code: str
    message: str
    type: ErrorType

    # Context fields
    param: Optional[str] = None
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.param:
            result["param"] = self.param
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class MeteringException(Exception):
    """Base exception for all TutorMeter errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(MeteringException):
    """Base class for semantic errors (client must fix request)."""
    pass


class NotFoundError(SemanticError):
    """A referenced record does not exist."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.SEMANTIC,
                retryable=False,
                details=details or {},
            ),
            status_code=404
        )


class SessionNotFoundError(NotFoundError):
    """No session carries the given external session id."""

    def __init__(self, external_session_id: str):
        super().__init__(
            code="session_not_found",
            message=f"Session '{external_session_id}' not found",
            details={"session_id": external_session_id},
        )
        self.external_session_id = external_session_id


class SubscriptionNotFoundError(NotFoundError):
    """Subscriber has no active subscription."""

    def __init__(self, subscriber_id: str):
        super().__init__(
            code="subscription_not_found",
            message=f"No active subscription for subscriber '{subscriber_id}'",
            details={"subscriber_id": subscriber_id},
        )


class PlanNotFoundError(NotFoundError):
    """Referenced plan does not exist."""

    def __init__(self, plan_id: Any):
        super().__init__(
            code="plan_not_found",
            message=f"Plan '{plan_id}' not found",
            details={"plan_id": str(plan_id)},
        )


class ConflictError(SemanticError):
    """Write collides with an existing record."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.SEMANTIC,
                retryable=False,
                details=details or {},
            ),
            status_code=409
        )


class SessionExistsError(ConflictError):
    """External session id is already taken."""

    def __init__(self, external_session_id: str):
        super().__init__(
            code="session_exists",
            message=f"Session '{external_session_id}' already exists",
            details={"session_id": external_session_id},
        )
        self.external_session_id = external_session_id


class InvalidUsageError(SemanticError):
    """Usage report or ledger delta is malformed."""

    def __init__(self, message: str, param: str = ""):
        super().__init__(
            ErrorDetails(
                code="invalid_usage",
                message=message,
                type=ErrorType.SEMANTIC,
                param=param or None,
                retryable=False,
            ),
            status_code=400
        )


# ============================================================
# Internal Errors
# ============================================================

class InternalError(MeteringException):
    """Base class for infrastructure and data-integrity errors."""
    pass


class StoreUnavailableError(InternalError):
    """Backing store could not be reached or failed mid-operation."""

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(
            ErrorDetails(
                code="store_unavailable",
                message=f"Store unavailable during {operation}" + (f": {reason}" if reason else ""),
                type=ErrorType.INFRA,
                retryable=True,
                retry_after=5,
                details={"operation": operation},
            ),
            status_code=503
        )
        self.operation = operation


class ServiceUnavailableError(InternalError):
    """Metering service is not initialized (startup or shutdown)."""

    def __init__(self, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="service_unavailable",
                message="Metering service not initialized. Server may be starting up.",
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=True,
                retry_after=5,
            ),
            status_code=503
        )


class StoreTimeoutError(InternalError):
    """Store call did not complete within the configured bound."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            ErrorDetails(
                code="store_timeout",
                message=f"{operation} did not complete within {timeout_seconds}s",
                type=ErrorType.INFRA,
                retryable=True,
                retry_after=1,
                details={"operation": operation, "timeout_seconds": timeout_seconds},
            ),
            status_code=504
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class LedgerCorruptionError(InternalError):
    """A ledger row holds values that can never be produced by additive updates."""

    def __init__(self, subscriber_id: str, year_month: str, tokens_used: int, sessions_count: int):
        super().__init__(
            ErrorDetails(
                code="ledger_corrupted",
                message=f"Quota ledger row for {subscriber_id}/{year_month} has negative counters",
                type=ErrorType.INFRA,
                retryable=False,
                details={
                    "subscriber_id": subscriber_id,
                    "year_month": year_month,
                    "tokens_used": tokens_used,
                    "sessions_count": sessions_count,
                },
            ),
            status_code=500
        )


class PricingConfigurationError(InternalError):
    """No pricing row and no default price exist for a model."""

    def __init__(self, model: str):
        super().__init__(
            ErrorDetails(
                code="pricing_not_configured",
                message=f"No pricing configured for model '{model}'",
                type=ErrorType.INFRA,
                retryable=False,
                details={"model": model},
            ),
            status_code=500
        )
        self.model = model


def is_retryable(error: Exception) -> bool:
    """Whether a caller may safely retry the failed operation."""
    if isinstance(error, MeteringException):
        return error.error.retryable
    return False
