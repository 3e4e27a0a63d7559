"""
TutorMeter - Metering Service

Wires the pricing resolver, ledger, limit gate, session manager, usage
ingestor and transcript recorder around one store, and runs the background
stale-session sweep.

Usage:
    service = MeteringService.from_settings(MeteringSettings.from_env())
    await service.start()
    ...
    await service.stop()
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import MeteringSettings, StoreBackend
from ..db.connection import DatabasePool
from ..db.memory import InMemoryMeteringStore
from ..db.postgres import PostgresMeteringStore
from ..db.store import MeteringStore
from ..observability.logging import TimedOperation, get_logger
from .ingestor import UsageIngestor
from .ledger import QuotaLedger, utc_now
from .limits import LimitGate
from .pricing import PricingResolver, PricingTable
from .sessions import SessionManager
from .transcripts import TranscriptRecorder

logger = get_logger(__name__)


def create_store(settings: MeteringSettings) -> MeteringStore:
    """Store for the configured backend."""
    if settings.store_backend == StoreBackend.POSTGRES:
        return PostgresMeteringStore(DatabasePool(settings.database_url))
    return InMemoryMeteringStore()


class MeteringService:
    """All metering components sharing one store, clock and timeout."""

    def __init__(
        self,
        store: MeteringStore,
        settings: Optional[MeteringSettings] = None,
        *,
        pricing_table: Optional[PricingTable] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or MeteringSettings()
        self.store = store
        self.clock = clock

        timeout = self.settings.store_timeout_seconds
        table = pricing_table or PricingTable.default(
            fallback_model=self.settings.pricing_fallback_model
        )

        self.pricing = PricingResolver(store, table, clock=clock, store_timeout=timeout)
        self.ledger = QuotaLedger(store, clock=clock, store_timeout=timeout)
        self.limits = LimitGate(
            store,
            self.ledger,
            allow_usage_without_subscription=self.settings.allow_usage_without_subscription,
            clock=clock,
            store_timeout=timeout,
        )
        self.sessions = SessionManager(store, self.limits, clock=clock, store_timeout=timeout)
        self.ingestor = UsageIngestor(
            store,
            self.sessions,
            self.pricing,
            self.limits,
            clock=clock,
            store_timeout=timeout,
        )
        self.transcripts = TranscriptRecorder(
            store, self.sessions, self.ingestor, clock=clock, store_timeout=timeout
        )

        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: MeteringSettings) -> "MeteringService":
        settings.validate()
        return cls(create_store(settings), settings)

    async def start(self, run_sweeper: bool = True) -> None:
        await self.store.connect()
        interval = self.settings.session_sweep_interval_seconds
        if run_sweeper and interval > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(interval))
        logger.info(
            "Metering service started",
            store_backend=self.settings.store_backend.value,
            allow_usage_without_subscription=self.settings.allow_usage_without_subscription,
            sweep_interval_seconds=interval if run_sweeper else 0,
        )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.store.close()
        logger.info("Metering service stopped")

    async def sweep_stale_sessions(self):
        """One pass of the stale-session sweep."""
        max_idle = timedelta(seconds=self.settings.session_idle_timeout_seconds)
        async with TimedOperation("sessions.sweep", logger):
            return await self.sessions.expire_stale(max_idle)

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_stale_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep sweeping; the next pass retries the same sessions
                logger.error("Stale session sweep failed", error=str(e), error_type=type(e).__name__)
