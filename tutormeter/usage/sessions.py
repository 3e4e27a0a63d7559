"""
TutorMeter - Session Lifecycle Manager

Creates, finalizes and expires tutoring sessions.

Each session pre-debits one session unit from the current month's ledger
in the same store write that inserts it. Finalizing or abandoning a
session has no further ledger effect.

Status transitions, each at most once:
    active -> completed   (finalize)
    active -> abandoned   (expire_stale)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import InvalidUsageError, SessionExistsError, SessionNotFoundError
from ..db.models import Session, SessionStatus
from ..db.store import MeteringStore, guarded
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import trace_operation
from .ledger import current_year_month, utc_now
from .limits import LimitCheckResult, LimitGate

logger = get_logger(__name__)


@dataclass
class SessionAdmission:
    """Outcome of a gated session creation."""
    allowed: bool
    decision: LimitCheckResult
    session: Optional[Session] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "decision": self.decision.to_dict(),
            "session_id": self.session.external_session_id if self.session else None,
        }


class SessionManager:
    """
    Session lifecycle manager.

    Usage:
        manager = SessionManager(store, gate)
        admission = await manager.create_within_limit("user-1", "sess-42", "gpt-realtime")
        ...
        await manager.finalize("sess-42")
    """

    def __init__(
        self,
        store: MeteringStore,
        gate: LimitGate,
        *,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.gate = gate
        self.clock = clock
        self.store_timeout = store_timeout

    async def create(self, subscriber_id: str, external_session_id: str, model: str) -> Session:
        """
        Create an active session and debit one session unit.

        Does not consult the gate. Raises SessionExistsError when the
        external id is taken; the ledger is then unchanged.
        """
        self._validate_ids(subscriber_id, external_session_id, model)
        now = self.clock()

        with trace_operation("sessions.create", subscriber_id=subscriber_id, session_id=external_session_id):
            try:
                write = await guarded(
                    self.store.create_session(
                        subscriber_id,
                        external_session_id,
                        model,
                        year_month=current_year_month(now),
                        now=now,
                    ),
                    timeout=self.store_timeout,
                    operation="sessions.create",
                )
            except SessionExistsError:
                get_metrics().record_session(model, "conflict")
                logger.info("Session already exists", session_id=external_session_id, subscriber_id=subscriber_id)
                raise

        write.ledger.verify()
        get_metrics().record_session(model, "created")
        logger.info(
            "Session created",
            session_id=external_session_id,
            subscriber_id=subscriber_id,
            model=model,
            sessions_count=write.ledger.sessions_count,
        )
        return write.session

    async def create_within_limit(
        self,
        subscriber_id: str,
        external_session_id: str,
        model: str,
    ) -> SessionAdmission:
        """
        Check the session limit and create the session as one atomic step.

        Concurrent calls for the same subscriber serialize on the month's
        ledger row, so they can never jointly exceed the session limit.
        """
        self._validate_ids(subscriber_id, external_session_id, model)
        now = self.clock()

        with trace_operation(
            "sessions.create_within_limit", subscriber_id=subscriber_id, session_id=external_session_id
        ) as span:
            try:
                write = await guarded(
                    self.store.create_session(
                        subscriber_id,
                        external_session_id,
                        model,
                        year_month=current_year_month(now),
                        now=now,
                        admission=self.gate.session_admission(),
                    ),
                    timeout=self.store_timeout,
                    operation="sessions.create_within_limit",
                )
            except SessionExistsError:
                get_metrics().record_session(model, "conflict")
                raise
            span.set_attribute("tutormeter.allowed", write.session is not None)

        decision: LimitCheckResult = write.decision
        self.gate.record_decision(subscriber_id, decision)

        if write.session is None:
            return SessionAdmission(allowed=False, decision=decision)

        write.ledger.verify()
        get_metrics().record_session(model, "created")
        logger.info(
            "Session admitted",
            session_id=external_session_id,
            subscriber_id=subscriber_id,
            model=model,
            sessions_count=write.ledger.sessions_count,
            session_limit=decision.limit,
        )
        return SessionAdmission(allowed=True, decision=decision, session=write.session)

    async def get(self, external_session_id: str) -> Session:
        session = await guarded(
            self.store.get_session(external_session_id),
            timeout=self.store_timeout,
            operation="sessions.get",
        )
        if session is None:
            raise SessionNotFoundError(external_session_id)
        return session

    async def list_for_subscriber(
        self,
        subscriber_id: str,
        status: Optional[SessionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Session]:
        if limit <= 0 or offset < 0:
            raise InvalidUsageError("limit must be positive and offset non-negative", param="limit")
        return await guarded(
            self.store.list_sessions(subscriber_id, status=status, limit=limit, offset=offset),
            timeout=self.store_timeout,
            operation="sessions.list",
        )

    async def finalize(self, external_session_id: str) -> Session:
        """
        Close a session as completed.

        Idempotent: a session that is already closed comes back unchanged.
        """
        now = self.clock()
        with trace_operation("sessions.finalize", session_id=external_session_id):
            result = await guarded(
                self.store.finalize_session(external_session_id, now),
                timeout=self.store_timeout,
                operation="sessions.finalize",
            )
        session = result.session
        if session is None:
            raise SessionNotFoundError(external_session_id)

        if result.closed:
            get_metrics().record_session(session.model, "finalized")
            logger.info(
                "Session finalized",
                session_id=external_session_id,
                subscriber_id=session.subscriber_id,
                duration_seconds=session.duration_seconds,
            )
        return session

    async def expire_stale(self, max_idle: timedelta) -> List[Session]:
        """
        Abandon active sessions idle for longer than `max_idle`.

        Idle time runs from the last metrics update, else the start time,
        which also becomes the session's end time. The ledger is untouched.
        """
        if max_idle <= timedelta(0):
            raise InvalidUsageError("max_idle must be positive", param="max_idle")

        cutoff = self.clock() - max_idle
        expired = await guarded(
            self.store.expire_stale_sessions(cutoff),
            timeout=self.store_timeout,
            operation="sessions.expire_stale",
        )

        for session in expired:
            get_metrics().record_session(session.model, "abandoned")
        if expired:
            logger.info(
                "Stale sessions abandoned",
                count=len(expired),
                session_ids=[s.external_session_id for s in expired],
                cutoff=cutoff.isoformat(),
            )
        return expired

    @staticmethod
    def _validate_ids(subscriber_id: str, external_session_id: str, model: str) -> None:
        if not subscriber_id:
            raise InvalidUsageError("subscriber_id is required", param="subscriber_id")
        if not external_session_id:
            raise InvalidUsageError("session_id is required", param="session_id")
        if not model:
            raise InvalidUsageError("model is required", param="model")
