"""
TutorMeter - Metering Routes

Endpoints:
- POST /v1/sessions                       Start a session (gated by the monthly session limit)
- GET  /v1/sessions                       List the caller's sessions
- GET  /v1/sessions/{session_id}          Session with its metrics
- POST /v1/sessions/{session_id}/usage    Report a token delta
- POST /v1/sessions/{session_id}/events   Forward a realtime transport event
- POST /v1/sessions/{session_id}/finalize Close a session
- POST /v1/sessions/{session_id}/messages Save a transcript message
- GET  /v1/sessions/{session_id}/messages Transcript of a session
- GET  /v1/sessions/{session_id}/stats    Transcript statistics
- GET  /v1/limits/tokens                  Token limit check
- GET  /v1/limits/sessions                Session limit check
- GET  /v1/limits/usage                   Current-month usage summary

A quota denial is answered with 403 and the gate's decision; it is not an
error of the service.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse

from ..db.models import SessionStatus
from ..observability.logging import get_logger
from ..usage import LimitCheckResult, MeteringService, UsageChannel, UsageObservation
from .dependencies import (
    ensure_owner,
    get_request_id,
    get_service,
    get_subscriber_id,
    quota_denied_response,
)
from .models import (
    CreateSessionRequest,
    LimitCheckResponse,
    SaveMessageRequest,
    SessionListResponse,
    SessionResponse,
    TranscriptListResponse,
    TranscriptMessageResponse,
    TranscriptStatsResponse,
    UsageReportRequest,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["Metering"])


def _headers(request: Request, decision: Optional[LimitCheckResult] = None) -> Dict[str, str]:
    headers = {"X-Request-Id": get_request_id(request)}
    if decision is not None and decision.warning:
        headers["X-Quota-Warning"] = decision.warning
    return headers


def _limit_response(result: LimitCheckResult) -> LimitCheckResponse:
    return LimitCheckResponse(**result.to_dict())


# ============================================================
# Sessions
# ============================================================

@router.post("/sessions", status_code=201, response_model=SessionResponse)
async def create_session(
    request: Request,
    body: CreateSessionRequest,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """
    Start a metered session.

    The session limit check and the session insert happen as one step, so
    parallel starts can never exceed the plan's monthly session limit.
    """
    model = body.model or service.settings.default_model
    admission = await service.sessions.create_within_limit(subscriber_id, body.session_id, model)

    if not admission.allowed:
        return quota_denied_response(request, admission.decision)

    return JSONResponse(
        status_code=201,
        content=SessionResponse.from_session(admission.session).model_dump(mode="json"),
        headers=_headers(request, admission.decision),
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    status: Optional[SessionStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    sessions = await service.sessions.list_for_subscriber(
        subscriber_id, status=status, limit=limit, offset=offset
    )
    return SessionListResponse(
        data=[SessionResponse.from_session(s) for s in sessions],
        limit=limit,
        offset=offset,
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    session = ensure_owner(await service.sessions.get(session_id), subscriber_id)
    return SessionResponse.from_session(session)


@router.post("/sessions/{session_id}/usage")
async def report_usage(
    request: Request,
    session_id: str,
    body: UsageReportRequest,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """
    Report token usage observed since the previous report.

    Send an event_key to make retries safe: a repeated key is acknowledged
    with duplicate=true and not counted again.
    """
    ensure_owner(await service.sessions.get(session_id), subscriber_id)

    outcome = await service.ingestor.record_usage(
        session_id,
        body.input_tokens,
        body.output_tokens,
        event_key=body.event_key,
        channel=UsageChannel.METRICS_API,
        event_data=body.event_data,
        enforce_limit=body.enforce_limit,
    )

    if not outcome.allowed:
        return quota_denied_response(request, outcome.decision)

    return JSONResponse(content=outcome.to_dict(), headers=_headers(request, outcome.decision))


@router.post("/sessions/{session_id}/events")
async def ingest_realtime_event(
    request: Request,
    session_id: str,
    event: Dict[str, Any] = Body(...),
    enforce_limit: bool = Query(default=False),
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """
    Forward a realtime transport event.

    Events without usage (deltas, transcripts, ...) are acknowledged and
    skipped. Usage is keyed by the response id, so an event forwarded more
    than once is counted once.
    """
    ensure_owner(await service.sessions.get(session_id), subscriber_id)

    observation = UsageObservation.from_realtime_event(event)
    if observation is None:
        logger.debug("Realtime event without usage skipped", session_id=session_id, event_type=event.get("type"))
        return JSONResponse(
            content={
                "session_id": session_id,
                "applied": False,
                "skipped": True,
                "event_type": event.get("type"),
            },
            headers=_headers(request),
        )

    outcome = await service.ingestor.record_observation(
        session_id, observation, enforce_limit=enforce_limit
    )

    if not outcome.allowed:
        return quota_denied_response(request, outcome.decision)

    content = outcome.to_dict()
    content["skipped"] = False
    content["event_type"] = observation.event_type
    return JSONResponse(content=content, headers=_headers(request, outcome.decision))


@router.post("/sessions/{session_id}/finalize", response_model=SessionResponse)
async def finalize_session(
    session_id: str,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """Close a session. Finalizing a closed session returns it unchanged."""
    ensure_owner(await service.sessions.get(session_id), subscriber_id)
    session = await service.sessions.finalize(session_id)
    return SessionResponse.from_session(session)


# ============================================================
# Transcripts
# ============================================================

@router.post("/sessions/{session_id}/messages", status_code=201)
async def save_message(
    request: Request,
    session_id: str,
    body: SaveMessageRequest,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """
    Save a transcript message.

    Usage embedded in event_data is metered like a forwarded realtime
    event: a response already reported through /events is not counted
    again.
    """
    ensure_owner(await service.sessions.get(session_id), subscriber_id)

    saved = await service.transcripts.save_message(
        session_id,
        body.role.value,
        body.content,
        message_type=body.message_type,
        event_type=body.event_type,
        event_data=body.event_data,
        attributes=body.attributes,
    )

    content: Dict[str, Any] = {
        "message": TranscriptMessageResponse.from_message(saved.message).model_dump(mode="json"),
        "usage": saved.usage.to_dict() if saved.usage is not None else None,
    }
    return JSONResponse(status_code=201, content=content, headers=_headers(request))


@router.get("/sessions/{session_id}/messages", response_model=TranscriptListResponse)
async def get_transcript(
    session_id: str,
    limit: int = Query(default=1000, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    ensure_owner(await service.sessions.get(session_id), subscriber_id)
    messages = await service.transcripts.history(session_id, limit=limit, offset=offset)
    return TranscriptListResponse(
        data=[TranscriptMessageResponse.from_message(m) for m in messages],
        limit=limit,
        offset=offset,
    )


@router.get("/sessions/{session_id}/stats", response_model=TranscriptStatsResponse)
async def get_transcript_stats(
    session_id: str,
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    ensure_owner(await service.sessions.get(session_id), subscriber_id)
    stats = await service.transcripts.stats(session_id)
    return TranscriptStatsResponse.from_stats(session_id, stats)


# ============================================================
# Limits
# ============================================================

@router.get("/limits/tokens", response_model=LimitCheckResponse)
async def check_token_limit(
    additional_tokens: int = Query(default=0, ge=0),
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    """Would `additional_tokens` more tokens fit in this month's limit? Reserves nothing."""
    result = await service.limits.check_token_limit(subscriber_id, additional_tokens)
    return _limit_response(result)


@router.get("/limits/sessions", response_model=LimitCheckResponse)
async def check_session_limit(
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    result = await service.limits.check_session_limit(subscriber_id)
    return _limit_response(result)


@router.get("/limits/usage")
async def get_usage_summary(
    subscriber_id: str = Depends(get_subscriber_id),
    service: MeteringService = Depends(get_service),
):
    summary = await service.limits.get_usage_summary(subscriber_id)
    return {"object": "usage", **summary.to_dict()}
