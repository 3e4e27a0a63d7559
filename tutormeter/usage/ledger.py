"""
TutorMeter - Quota Ledger

Monthly usage counters per (subscriber, UTC year-month).

Counters only ever grow. A row is created lazily by the first write of a
month; reads of a month without a row return zeros and create nothing.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.errors import InvalidUsageError
from ..db.models import LedgerTotals
from ..db.store import MeteringStore, guarded
from ..observability.logging import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_year_month(now: Optional[datetime] = None) -> str:
    """UTC calendar month as YYYY-MM."""
    now = now or utc_now()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m")


class QuotaLedger:
    """Read and increment the monthly ledger."""

    def __init__(
        self,
        store: MeteringStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.clock = clock
        self.store_timeout = store_timeout

    def year_month(self) -> str:
        return current_year_month(self.clock())

    async def get_current(self, subscriber_id: str, year_month: Optional[str] = None) -> LedgerTotals:
        """Totals for the month (default: current); zeros when nothing was recorded."""
        year_month = year_month or self.year_month()
        totals = await guarded(
            self.store.get_ledger(subscriber_id, year_month),
            timeout=self.store_timeout,
            operation="ledger.get_current",
        )
        if totals is None:
            return LedgerTotals.empty(subscriber_id, year_month)
        return totals.verify()

    async def add_usage(
        self,
        subscriber_id: str,
        year_month: Optional[str],
        tokens_delta: int,
        sessions_delta: int,
    ) -> LedgerTotals:
        """
        Atomically add to the month's counters, creating the row if needed.

        Raises:
            InvalidUsageError: If a delta is negative.
        """
        if tokens_delta < 0:
            raise InvalidUsageError("tokens_delta must be non-negative", param="tokens_delta")
        if sessions_delta < 0:
            raise InvalidUsageError("sessions_delta must be non-negative", param="sessions_delta")

        year_month = year_month or self.year_month()
        totals = await guarded(
            self.store.add_ledger_usage(
                subscriber_id, year_month, tokens_delta, sessions_delta, self.clock()
            ),
            timeout=self.store_timeout,
            operation="ledger.add_usage",
        )

        logger.debug(
            "Ledger updated",
            subscriber_id=subscriber_id,
            year_month=year_month,
            tokens_delta=tokens_delta,
            sessions_delta=sessions_delta,
            tokens_used=totals.tokens_used,
            sessions_count=totals.sessions_count,
        )
        return totals.verify()
