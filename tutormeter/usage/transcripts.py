"""
TutorMeter - Session Transcripts

Persists the messages of a tutoring conversation and meters the usage a
message carries.

A saved message may embed the transport event that produced it. Token
usage found in that event is applied through the usage ingestor on the
transcript channel, keyed like a forwarded realtime event (response id,
else item id, else event id). The same response reported through
/events and through a saved message is therefore counted once.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import InvalidUsageError
from ..db.models import MessageDraft, MessageRole, TranscriptMessage, TranscriptStats
from ..db.store import MeteringStore, guarded
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import trace_operation
from .ingestor import UsageChannel, UsageIngestor, UsageObservation, UsageOutcome
from .ledger import utc_now
from .sessions import SessionManager

logger = get_logger(__name__)


@dataclass
class SavedMessage:
    """A stored message and the outcome of the usage it carried, if any."""
    message: TranscriptMessage
    usage: Optional[UsageOutcome] = None


class TranscriptRecorder:
    """
    Transcript persistence on top of the session manager and ingestor.

    Usage:
        saved = await recorder.save_message(
            "sess-42", "assistant", "Bonjour !",
            event_type="response.done", event_data=event,
        )
        history = await recorder.history("sess-42")
    """

    def __init__(
        self,
        store: MeteringStore,
        sessions: SessionManager,
        ingestor: UsageIngestor,
        *,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.sessions = sessions
        self.ingestor = ingestor
        self.clock = clock
        self.store_timeout = store_timeout

    async def save_message(
        self,
        external_session_id: str,
        role: str,
        content: str,
        *,
        message_type: str = "text",
        event_type: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> SavedMessage:
        """
        Append a message to the session transcript.

        Usage embedded in `event_data` is applied before the message is
        stored. The message records the tokens and cost it added, which
        are zero when the usage was a duplicate.

        Raises:
            SessionNotFoundError: Unknown session.
            InvalidUsageError: Unknown role, blank content or bad usage figures.
        """
        try:
            role = MessageRole(role)
        except ValueError:
            raise InvalidUsageError("role must be user, assistant or system", param="role")
        content = (content or "").strip()
        if not content:
            raise InvalidUsageError("content must be a non-empty string", param="content")

        session = await self.sessions.get(external_session_id)

        observation = None
        if event_data:
            observation = UsageObservation.from_realtime_event(event_data)

        outcome = None
        if observation is not None and (observation.input_tokens or observation.output_tokens):
            outcome = await self.ingestor.record_observation(
                external_session_id, observation, channel=UsageChannel.TRANSCRIPT
            )

        draft = MessageDraft(
            role=role,
            content=content,
            message_type=message_type or "text",
            event_type=event_type,
            event_data=event_data or {},
            usage_event_key=observation.event_key if observation else None,
            attributes=attributes or {},
        )
        if outcome is not None and outcome.applied:
            draft.input_tokens = observation.input_tokens
            draft.output_tokens = observation.output_tokens
            draft.cost_total = outcome.cost.total

        with trace_operation("transcripts.save_message", session_id=external_session_id, role=role.value):
            message = await guarded(
                self.store.add_message(session, draft, self.clock()),
                timeout=self.store_timeout,
                operation="transcripts.save_message",
            )

        get_metrics().record_transcript_message(role.value)
        logger.info(
            "Transcript message saved",
            session_id=external_session_id,
            subscriber_id=session.subscriber_id,
            role=role.value,
            sequence_number=message.sequence_number,
            content_length=len(content),
            usage_applied=bool(outcome and outcome.applied),
        )
        return SavedMessage(message=message, usage=outcome)

    async def history(self, external_session_id: str, limit: int = 1000, offset: int = 0) -> List[TranscriptMessage]:
        """Messages of a session in sequence order."""
        if limit <= 0 or offset < 0:
            raise InvalidUsageError("limit must be positive and offset non-negative", param="limit")
        session = await self.sessions.get(external_session_id)
        return await guarded(
            self.store.list_messages(session, limit=limit, offset=offset),
            timeout=self.store_timeout,
            operation="transcripts.history",
        )

    async def stats(self, external_session_id: str) -> TranscriptStats:
        session = await self.sessions.get(external_session_id)
        return await guarded(
            self.store.get_transcript_stats(session),
            timeout=self.store_timeout,
            operation="transcripts.stats",
        )
