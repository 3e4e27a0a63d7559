"""
TutorMeter - API Dependencies

Shared dependencies for FastAPI routes.
"""

import uuid
from typing import Optional

from fastapi import Header, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    ErrorDetails,
    ErrorType,
    SemanticError,
    ServiceUnavailableError,
    SessionNotFoundError,
)
from ..db.models import Session
from ..usage import LimitCheckResult, MeteringService


def get_service(request: Request) -> MeteringService:
    """
    Get the metering service.

    The service is attached to app.state by the server lifespan (or by
    create_app when one is injected).
    """
    service: Optional[MeteringService] = getattr(request.app.state, "metering", None)
    if service is None:
        raise ServiceUnavailableError(get_request_id(request))
    return service


def get_subscriber_id(
    request: Request,
    x_subscriber_id: Optional[str] = Header(default=None),
) -> str:
    """
    Subscriber on whose behalf the request is made.

    Identity is established upstream; the gateway forwards it as
    X-Subscriber-Id.
    """
    subscriber_id = (x_subscriber_id or "").strip()
    if not subscriber_id:
        raise SemanticError(
            ErrorDetails(
                code="missing_subscriber",
                message="X-Subscriber-Id header is required",
                type=ErrorType.SEMANTIC,
                param="X-Subscriber-Id",
                request_id=get_request_id(request),
                retryable=False,
            ),
            status_code=401,
        )
    return subscriber_id


def get_request_id(request: Request) -> str:
    """Request id bound by the observability middleware, or a fresh one."""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = generate_request_id()
        request.state.request_id = request_id
    return request_id


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:24]}"


def ensure_owner(session: Session, subscriber_id: str) -> Session:
    """Sessions of other subscribers are reported as not found."""
    if session.subscriber_id != subscriber_id:
        raise SessionNotFoundError(session.external_session_id)
    return session


def quota_denied_response(request: Request, decision: LimitCheckResult) -> JSONResponse:
    """403 carrying the gate's decision."""
    request_id = get_request_id(request)
    error = ErrorDetails(
        code="quota_exceeded",
        message=decision.reason or "Monthly limit exceeded",
        type=ErrorType.SEMANTIC,
        request_id=request_id,
        retryable=False,
        details={"decision": decision.to_dict()},
    )
    return JSONResponse(
        status_code=403,
        content=error.to_dict(),
        headers={
            "X-Request-Id": request_id,
            "X-Error-Type": error.type.value,
            "X-Error-Code": error.code,
        },
    )
