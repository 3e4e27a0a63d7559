"""
TutorMeter - API Layer

HTTP surface of the metering service: sessions, usage reports, forwarded
realtime events, transcripts and limit checks.
"""

from .models import (
    CreateSessionRequest,
    UsageReportRequest,
    SaveMessageRequest,
    SessionResponse,
    SessionMetricsResponse,
    SessionListResponse,
    LimitCheckResponse,
    HealthResponse,
    TranscriptMessageResponse,
    TranscriptListResponse,
    TranscriptStatsResponse,
)
from .dependencies import (
    get_service,
    get_subscriber_id,
    get_request_id,
    quota_denied_response,
)
from .routes import router as metering_router


__all__ = [
    # Router
    "metering_router",
    # Request models
    "CreateSessionRequest",
    "UsageReportRequest",
    "SaveMessageRequest",
    # Response models
    "SessionResponse",
    "SessionMetricsResponse",
    "SessionListResponse",
    "LimitCheckResponse",
    "HealthResponse",
    "TranscriptMessageResponse",
    "TranscriptListResponse",
    "TranscriptStatsResponse",
    # Dependencies
    "get_service",
    "get_subscriber_id",
    "get_request_id",
    "quota_denied_response",
]
