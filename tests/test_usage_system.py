"""
TutorMeter - Usage Metering System Tests

Tests for the metering core covering:
- Pricing resolver and cost rounding
- Quota ledger
- Limit enforcement gate
- Session lifecycle
- Usage ingestion and realtime event parsing
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tutormeter.core.errors import (
    InvalidUsageError,
    LedgerCorruptionError,
    PlanNotFoundError,
    PricingConfigurationError,
    SessionExistsError,
    SessionNotFoundError,
)
from tutormeter.db import LedgerTotals, SessionStatus
from tutormeter.config import MeteringSettings
from tutormeter.usage import (
    LimitKind,
    MeteringService,
    PricingResolver,
    PricingSource,
    PricingTable,
    QuotaLedger,
    UsageChannel,
    UsageObservation,
    calculate_cost,
    current_year_month,
    decide_sessions,
    decide_tokens,
)
from tutormeter.usage.limits import (
    NO_SUBSCRIPTION,
    NO_SUBSCRIPTION_WARNING,
    SESSION_LIMIT_EXCEEDED,
    TOKEN_LIMIT_EXCEEDED,
)


MINI = "gpt-4o-mini-realtime-preview"
SUB = "user-1"


# ============================================================
# Pricing Tests
# ============================================================

class TestCalculateCost:
    """Tests for cost calculation."""

    def test_cost_breakdown(self):
        """1000 input + 500 output tokens at 0.15 / 0.60 per 1M."""
        pricing = PricingTable.default().get(MINI)
        cost = calculate_cost(1000, 500, pricing)

        assert cost.input == Decimal("0.000150")
        assert cost.output == Decimal("0.000300")
        assert cost.total == Decimal("0.000450")

    def test_total_is_sum_of_rounded_parts(self):
        table = PricingTable({"m": ("0.1", "0.1")})
        pricing = table.get("m")

        # 5 tokens * 0.1 / 1M = 0.0000005 -> rounds half up to 0.000001
        cost = calculate_cost(5, 5, pricing)
        assert cost.input == Decimal("0.000001")
        assert cost.output == Decimal("0.000001")
        assert cost.total == cost.input + cost.output

    def test_rounds_down_below_half(self):
        pricing = PricingTable.default().get(MINI)
        cost = calculate_cost(1, 0, pricing)
        assert cost.input == Decimal("0.000000")

    def test_zero_tokens(self):
        pricing = PricingTable.default().get("gpt-realtime")
        cost = calculate_cost(0, 0, pricing)
        assert cost.total == Decimal("0")

    def test_negative_tokens_rejected(self):
        pricing = PricingTable.default().get(MINI)
        with pytest.raises(InvalidUsageError):
            calculate_cost(-1, 0, pricing)

    def test_to_dict_uses_strings(self):
        pricing = PricingTable.default().get(MINI)
        assert calculate_cost(1000, 500, pricing).to_dict() == {
            "input": "0.000150",
            "output": "0.000300",
            "total": "0.000450",
        }


class TestPricingTable:
    """Tests for PricingTable."""

    def test_default_models(self):
        table = PricingTable.default()
        assert table.models() == sorted([
            "gpt-4o-mini-realtime-preview",
            "gpt-4o-realtime-preview",
            "gpt-realtime",
            "gpt-realtime-mini",
        ])

    def test_get_known_model(self):
        pricing = PricingTable.default().get("gpt-realtime")
        assert pricing.input_per_1m == Decimal("4.00")
        assert pricing.output_per_1m == Decimal("16.00")
        assert pricing.source == PricingSource.DEFAULT

    def test_unknown_model_without_fallback(self):
        table = PricingTable.default()
        assert table.get("unknown") is None
        assert table.fallback("unknown") is None

    def test_fallback_prices_under_requested_model(self):
        table = PricingTable.default(fallback_model=MINI)
        pricing = table.fallback("custom-model")

        assert pricing.model == "custom-model"
        assert pricing.priced_as == MINI
        assert pricing.source == PricingSource.FALLBACK
        assert pricing.to_snapshot()["priced_as"] == MINI

    def test_unknown_fallback_model_rejected(self):
        with pytest.raises(PricingConfigurationError):
            PricingTable.default(fallback_model="does-not-exist")

    def test_float_prices_are_exact(self):
        table = PricingTable({"m": (0.1, 0.2)})
        assert table.get("m").input_per_1m == Decimal("0.1")


class TestPricingResolver:
    """Tests for PricingResolver."""

    @pytest.mark.asyncio
    async def test_database_row_wins(self, store, clock):
        await store.add_pricing_row(MINI, Decimal("1.00"), Decimal("2.00"), clock() - timedelta(days=1))
        resolver = PricingResolver(store, clock=clock)

        pricing = await resolver.resolve(MINI)
        assert pricing.source == PricingSource.DATABASE
        assert pricing.input_per_1m == Decimal("1.00")
        assert pricing.output_per_1m == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_latest_effective_row_wins(self, store, clock):
        await store.add_pricing_row(MINI, Decimal("1.00"), Decimal("2.00"), clock() - timedelta(days=30))
        await store.add_pricing_row(MINI, Decimal("3.00"), Decimal("4.00"), clock() - timedelta(days=1))
        await store.add_pricing_row(MINI, Decimal("9.00"), Decimal("9.00"), clock() + timedelta(days=1))

        pricing = await PricingResolver(store, clock=clock).resolve(MINI)
        assert pricing.input_per_1m == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_inactive_row_ignored(self, store, clock):
        await store.add_pricing_row(
            MINI, Decimal("1.00"), Decimal("2.00"), clock() - timedelta(days=1), is_active=False
        )
        pricing = await PricingResolver(store, clock=clock).resolve(MINI)
        assert pricing.source == PricingSource.DEFAULT

    @pytest.mark.asyncio
    async def test_falls_back_to_table(self, store, clock):
        pricing = await PricingResolver(store, clock=clock).resolve("gpt-realtime-mini")
        assert pricing.source == PricingSource.DEFAULT
        assert pricing.input_per_1m == Decimal("0.60")

    @pytest.mark.asyncio
    async def test_fallback_model(self, store, clock):
        resolver = PricingResolver(store, PricingTable.default(fallback_model=MINI), clock=clock)
        pricing = await resolver.resolve("custom-model")
        assert pricing.source == PricingSource.FALLBACK
        assert pricing.input_per_1m == Decimal("0.15")

    @pytest.mark.asyncio
    async def test_unknown_model_fails_closed(self, store, clock):
        with pytest.raises(PricingConfigurationError) as exc_info:
            await PricingResolver(store, clock=clock).resolve("custom-model")
        assert exc_info.value.code == "pricing_not_configured"


# ============================================================
# Ledger Tests
# ============================================================

class TestCurrentYearMonth:
    """Tests for the ledger month key."""

    def test_utc_month(self):
        assert current_year_month(datetime(2025, 3, 15, tzinfo=timezone.utc)) == "2025-03"

    def test_converts_to_utc(self):
        eastern = timezone(timedelta(hours=-5))
        # 2025-03-31 23:30 at UTC-5 is already April in UTC
        assert current_year_month(datetime(2025, 3, 31, 23, 30, tzinfo=eastern)) == "2025-04"

    def test_zero_padded(self):
        assert current_year_month(datetime(2025, 1, 1, tzinfo=timezone.utc)) == "2025-01"


class TestQuotaLedger:
    """Tests for QuotaLedger."""

    @pytest.mark.asyncio
    async def test_empty_month_reads_zero_without_creating_row(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)

        totals = await ledger.get_current(SUB)
        assert totals.tokens_used == 0
        assert totals.sessions_count == 0
        assert totals.year_month == "2025-03"
        assert await store.get_ledger(SUB, "2025-03") is None

    @pytest.mark.asyncio
    async def test_add_usage_accumulates(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)

        await ledger.add_usage(SUB, None, 100, 1)
        totals = await ledger.add_usage(SUB, None, 250, 0)

        assert totals.tokens_used == 350
        assert totals.sessions_count == 1
        assert (await ledger.get_current(SUB)).tokens_used == 350

    @pytest.mark.asyncio
    async def test_months_are_separate(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)

        await ledger.add_usage(SUB, "2025-02", 500, 1)
        await ledger.add_usage(SUB, None, 100, 0)

        assert (await ledger.get_current(SUB, "2025-02")).tokens_used == 500
        assert (await ledger.get_current(SUB)).tokens_used == 100

    @pytest.mark.asyncio
    async def test_negative_delta_rejected(self, store, clock):
        ledger = QuotaLedger(store, clock=clock)

        with pytest.raises(InvalidUsageError):
            await ledger.add_usage(SUB, None, -1, 0)
        with pytest.raises(InvalidUsageError):
            await ledger.add_usage(SUB, None, 0, -1)
        assert await store.get_ledger(SUB, "2025-03") is None

    @pytest.mark.asyncio
    async def test_negative_counter_is_corruption(self, store, clock):
        store._ledger[(SUB, "2025-03")] = LedgerTotals(SUB, "2025-03", tokens_used=-5)

        with pytest.raises(LedgerCorruptionError) as exc_info:
            await QuotaLedger(store, clock=clock).get_current(SUB)
        assert exc_info.value.status_code == 500


# ============================================================
# Limit Gate Tests
# ============================================================

class TestDecisions:
    """Tests for the pure decision functions."""

    def test_token_boundary_is_inclusive(self):
        from tutormeter.db import Plan

        plan = Plan(id=1, name="p", monthly_token_limit=1000)
        assert decide_tokens(plan, 900, 100).allowed is True
        assert decide_tokens(plan, 900, 101).allowed is False

    def test_session_boundary_is_strict(self):
        from tutormeter.db import Plan

        plan = Plan(id=1, name="p", monthly_session_limit=3)
        assert decide_sessions(plan, 2).allowed is True
        assert decide_sessions(plan, 3).allowed is False

    def test_unbounded(self):
        from tutormeter.db import Plan

        plan = Plan(id=1, name="p")
        assert decide_tokens(plan, 10**12, 10**12).allowed is True
        assert decide_sessions(plan, 10**6).allowed is True


class TestLimitGate:
    """Tests for LimitGate."""

    @pytest.mark.asyncio
    async def test_scenario_token_limit(self, service, subscribe):
        """Plan with 10000 tokens and 9500 used: 400 more fit, 600 do not."""
        await subscribe(SUB, token_limit=10_000)
        await service.ledger.add_usage(SUB, None, 9500, 0)

        allowed = await service.limits.check_token_limit(SUB, 400)
        assert allowed.allowed is True
        assert allowed.current == 9500
        assert allowed.limit == 10_000
        assert allowed.remaining == 500

        denied = await service.limits.check_token_limit(SUB, 600)
        assert denied.allowed is False
        assert denied.current == 9500
        assert denied.limit == 10_000
        assert denied.reason == TOKEN_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_scenario_session_limit(self, service, subscribe):
        """Plan with 1 session and 1 session already started: next one denied."""
        await subscribe(SUB, session_limit=1)
        await service.sessions.create(SUB, "s1", MINI)

        result = await service.limits.check_session_limit(SUB)
        assert result.allowed is False
        assert result.current == 1
        assert result.limit == 1
        assert result.kind == LimitKind.SESSIONS
        assert result.reason == SESSION_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_check_reserves_nothing(self, service, subscribe):
        await subscribe(SUB, token_limit=1000)

        await service.limits.check_token_limit(SUB, 500)
        await service.limits.check_session_limit(SUB)

        totals = await service.ledger.get_current(SUB)
        assert totals.tokens_used == 0
        assert totals.sessions_count == 0

    @pytest.mark.asyncio
    async def test_unbounded_plan(self, service, subscribe):
        await subscribe(SUB)
        await service.ledger.add_usage(SUB, None, 5_000_000, 40)

        assert (await service.limits.check_token_limit(SUB, 10**9)).allowed is True
        assert (await service.limits.check_session_limit(SUB)).allowed is True

    @pytest.mark.asyncio
    async def test_no_subscription_denied_by_default(self, service):
        result = await service.limits.check_token_limit(SUB, 1)
        assert result.allowed is False
        assert result.reason == NO_SUBSCRIPTION
        assert result.limit is None

    @pytest.mark.asyncio
    async def test_no_subscription_allowed_when_configured(self, store, clock):
        settings = MeteringSettings(allow_usage_without_subscription=True, session_sweep_interval_seconds=0)
        service = MeteringService(store, settings, clock=clock)

        result = await service.limits.check_session_limit(SUB)
        assert result.allowed is True
        assert result.warning == NO_SUBSCRIPTION_WARNING

    @pytest.mark.asyncio
    async def test_ended_subscription_is_not_active(self, service, store, clock):
        plan = await store.create_plan("old", monthly_token_limit=100)
        await store.create_subscription(
            SUB, plan.id,
            start_date=clock() - timedelta(days=60),
            end_date=clock() - timedelta(days=1),
        )

        result = await service.limits.check_token_limit(SUB, 1)
        assert result.allowed is False
        assert result.reason == NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_new_subscription_replaces_old(self, service, subscribe):
        await subscribe(SUB, token_limit=100, name="basic")
        await subscribe(SUB, token_limit=10_000, name="pro")

        plan = await service.limits.get_active_plan(SUB)
        assert plan.name == "pro"

    @pytest.mark.asyncio
    async def test_negative_additional_tokens(self, service, subscribe):
        await subscribe(SUB, token_limit=100)
        with pytest.raises(InvalidUsageError):
            await service.limits.check_token_limit(SUB, -1)

    @pytest.mark.asyncio
    async def test_denial_is_counted(self, service, subscribe, metric):
        await subscribe(SUB, token_limit=100)
        await service.limits.check_token_limit(SUB, 101)

        assert metric(
            "tutormeter_limit_denials_total",
            limit_type="tokens",
            reason=TOKEN_LIMIT_EXCEEDED,
        ) == 1

    @pytest.mark.asyncio
    async def test_usage_summary(self, service, subscribe):
        await subscribe(SUB, token_limit=10_000, session_limit=10, name="pro")
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_usage("s1", 1000, 500)

        summary = await service.limits.get_usage_summary(SUB)
        assert summary.has_subscription is True
        assert summary.tokens_used == 1500
        assert summary.tokens_remaining == 8500
        assert summary.sessions_remaining == 9

        data = summary.to_dict()
        assert data["plan"]["name"] == "pro"
        assert data["year_month"] == "2025-03"
        assert data["tokens"] == {"used": 1500, "limit": 10_000, "remaining": 8500}

    @pytest.mark.asyncio
    async def test_usage_summary_without_subscription(self, service):
        summary = await service.limits.get_usage_summary(SUB)
        assert summary.has_subscription is False
        assert summary.to_dict()["plan"] is None
        assert summary.tokens_remaining is None


# ============================================================
# Session Lifecycle Tests
# ============================================================

class TestSessionManager:
    """Tests for SessionManager."""

    @pytest.mark.asyncio
    async def test_scenario_create_and_conflict(self, service, metric):
        """Duplicate external id is a conflict and does not debit twice."""
        session = await service.sessions.create(SUB, "s1", "model-x")
        assert session.status == SessionStatus.ACTIVE
        assert (await service.ledger.get_current(SUB)).sessions_count == 1

        with pytest.raises(SessionExistsError) as exc_info:
            await service.sessions.create(SUB, "s1", "model-x")
        assert exc_info.value.status_code == 409

        assert (await service.ledger.get_current(SUB)).sessions_count == 1
        assert metric("tutormeter_sessions_total", model="model-x", outcome="created") == 1
        assert metric("tutormeter_sessions_total", model="model-x", outcome="conflict") == 1

    @pytest.mark.asyncio
    async def test_create_starts_with_zero_metrics(self, service, clock):
        session = await service.sessions.create(SUB, "s1", MINI)

        assert session.start_time == clock()
        assert session.end_time is None
        assert session.duration_seconds is None
        assert session.metrics.total_tokens == 0
        assert session.metrics.cost_total == Decimal("0")

    @pytest.mark.asyncio
    async def test_create_does_not_check_limits(self, service, subscribe):
        await subscribe(SUB, session_limit=0)
        session = await service.sessions.create(SUB, "s1", MINI)
        assert session is not None

    @pytest.mark.asyncio
    async def test_create_within_limit_admits(self, service, subscribe):
        await subscribe(SUB, session_limit=2)

        admission = await service.sessions.create_within_limit(SUB, "s1", MINI)
        assert admission.allowed is True
        assert admission.session.external_session_id == "s1"
        assert admission.decision.current == 0
        assert (await service.ledger.get_current(SUB)).sessions_count == 1

    @pytest.mark.asyncio
    async def test_create_within_limit_denies_at_limit(self, service, subscribe):
        await subscribe(SUB, session_limit=1)
        await service.sessions.create_within_limit(SUB, "s1", MINI)

        admission = await service.sessions.create_within_limit(SUB, "s2", MINI)
        assert admission.allowed is False
        assert admission.session is None
        assert admission.decision.reason == SESSION_LIMIT_EXCEEDED

        with pytest.raises(SessionNotFoundError):
            await service.sessions.get("s2")
        assert (await service.ledger.get_current(SUB)).sessions_count == 1

    @pytest.mark.asyncio
    async def test_create_within_limit_without_subscription(self, service):
        admission = await service.sessions.create_within_limit(SUB, "s1", MINI)
        assert admission.allowed is False
        assert admission.decision.reason == NO_SUBSCRIPTION
        assert admission.to_dict()["session_id"] is None

    @pytest.mark.asyncio
    async def test_create_within_limit_conflict(self, service, subscribe):
        await subscribe(SUB, session_limit=5)
        await service.sessions.create_within_limit(SUB, "s1", MINI)

        with pytest.raises(SessionExistsError):
            await service.sessions.create_within_limit(SUB, "s1", MINI)
        assert (await service.ledger.get_current(SUB)).sessions_count == 1

    @pytest.mark.asyncio
    async def test_empty_ids_rejected(self, service):
        with pytest.raises(InvalidUsageError):
            await service.sessions.create("", "s1", MINI)
        with pytest.raises(InvalidUsageError):
            await service.sessions.create(SUB, "", MINI)
        with pytest.raises(InvalidUsageError):
            await service.sessions.create(SUB, "s1", "")

    @pytest.mark.asyncio
    async def test_finalize(self, service, clock):
        await service.sessions.create(SUB, "s1", MINI)
        clock.advance(seconds=90)

        session = await service.sessions.finalize("s1")
        assert session.status == SessionStatus.COMPLETED
        assert session.end_time == clock()
        assert session.duration_seconds == 90

    @pytest.mark.asyncio
    async def test_second_finalize_in_same_instant_is_not_counted(self, service, clock, metric):
        await service.sessions.create(SUB, "s1", MINI)
        clock.advance(seconds=30)

        first = await service.sessions.finalize("s1")
        second = await service.sessions.finalize("s1")

        assert second.end_time == first.end_time == clock()
        assert metric("tutormeter_sessions_total", model=MINI, outcome="finalized") == 1

    @pytest.mark.asyncio
    async def test_store_reports_which_call_closed_the_session(self, service, store, clock):
        await service.sessions.create(SUB, "s1", MINI)

        first = await store.finalize_session("s1", clock())
        second = await store.finalize_session("s1", clock())
        missing = await store.finalize_session("nope", clock())

        assert first.closed is True
        assert second.closed is False
        assert second.session.status == SessionStatus.COMPLETED
        assert missing.session is None and missing.closed is False

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, service, clock, metric):
        await service.sessions.create(SUB, "s1", MINI)
        clock.advance(seconds=90)
        first = await service.sessions.finalize("s1")

        clock.advance(seconds=600)
        second = await service.sessions.finalize("s1")

        assert second.end_time == first.end_time
        assert second.duration_seconds == 90
        assert metric("tutormeter_sessions_total", model=MINI, outcome="finalized") == 1

    @pytest.mark.asyncio
    async def test_finalize_has_no_ledger_effect(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        before = await service.ledger.get_current(SUB)

        await service.sessions.finalize("s1")

        after = await service.ledger.get_current(SUB)
        assert (after.tokens_used, after.sessions_count) == (before.tokens_used, before.sessions_count)

    @pytest.mark.asyncio
    async def test_finalize_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await service.sessions.finalize("missing")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_expire_stale(self, service, clock, metric):
        await service.sessions.create(SUB, "idle", MINI)
        idle_start = clock()

        clock.advance(minutes=20)
        await service.sessions.create(SUB, "busy", MINI)
        clock.advance(minutes=20)
        await service.ingestor.record_usage("busy", 10, 10)
        clock.advance(minutes=5)

        expired = await service.sessions.expire_stale(timedelta(minutes=30))

        assert [s.external_session_id for s in expired] == ["idle"]
        idle = await service.sessions.get("idle")
        assert idle.status == SessionStatus.ABANDONED
        assert idle.end_time == idle_start
        assert idle.duration_seconds == 0
        assert (await service.sessions.get("busy")).status == SessionStatus.ACTIVE
        assert metric("tutormeter_sessions_total", model=MINI, outcome="abandoned") == 1

    @pytest.mark.asyncio
    async def test_expire_stale_uses_last_activity_as_end(self, service, clock):
        await service.sessions.create(SUB, "s1", MINI)
        clock.advance(minutes=10)
        await service.ingestor.record_usage("s1", 5, 5)
        last_activity = clock()
        clock.advance(hours=2)

        await service.sessions.expire_stale(timedelta(minutes=30))

        session = await service.sessions.get("s1")
        assert session.end_time == last_activity
        assert session.duration_seconds == 600

    @pytest.mark.asyncio
    async def test_expire_stale_leaves_ledger_and_closed_sessions(self, service, clock):
        await service.sessions.create(SUB, "done", MINI)
        await service.sessions.finalize("done")
        await service.sessions.create(SUB, "idle", MINI)
        before = await service.ledger.get_current(SUB)
        clock.advance(hours=3)

        expired = await service.sessions.expire_stale(timedelta(hours=1))

        assert [s.external_session_id for s in expired] == ["idle"]
        assert (await service.sessions.get("done")).status == SessionStatus.COMPLETED
        after = await service.ledger.get_current(SUB)
        assert after.sessions_count == before.sessions_count == 2

    @pytest.mark.asyncio
    async def test_finalize_abandoned_session_returns_it_unchanged(self, service, clock):
        await service.sessions.create(SUB, "s1", MINI)
        clock.advance(hours=3)
        await service.sessions.expire_stale(timedelta(hours=1))

        session = await service.sessions.finalize("s1")
        assert session.status == SessionStatus.ABANDONED

    @pytest.mark.asyncio
    async def test_expire_stale_requires_positive_idle(self, service):
        with pytest.raises(InvalidUsageError):
            await service.sessions.expire_stale(timedelta(0))

    @pytest.mark.asyncio
    async def test_list_for_subscriber(self, service, clock):
        await service.sessions.create(SUB, "a", MINI)
        clock.advance(seconds=1)
        await service.sessions.create(SUB, "b", MINI)
        clock.advance(seconds=1)
        await service.sessions.create("someone-else", "c", MINI)
        await service.sessions.finalize("a")

        sessions = await service.sessions.list_for_subscriber(SUB)
        assert [s.external_session_id for s in sessions] == ["b", "a"]

        active = await service.sessions.list_for_subscriber(SUB, status=SessionStatus.ACTIVE)
        assert [s.external_session_id for s in active] == ["b"]

        page = await service.sessions.list_for_subscriber(SUB, limit=1, offset=1)
        assert [s.external_session_id for s in page] == ["a"]

    @pytest.mark.asyncio
    async def test_list_rejects_bad_paging(self, service):
        with pytest.raises(InvalidUsageError):
            await service.sessions.list_for_subscriber(SUB, limit=0)
        with pytest.raises(InvalidUsageError):
            await service.sessions.list_for_subscriber(SUB, offset=-1)


# ============================================================
# Usage Ingestion Tests
# ============================================================

class TestUsageIngestor:
    """Tests for UsageIngestor."""

    @pytest.mark.asyncio
    async def test_scenario_accumulation(self, service):
        """1000/500 then 200/100 on a fresh session sums to 1800 everywhere."""
        await service.sessions.create(SUB, "s1", MINI)

        first = await service.ingestor.record_usage("s1", 1000, 500)
        second = await service.ingestor.record_usage("s1", 200, 100)

        assert first.applied and second.applied
        session = await service.sessions.get("s1")
        assert session.metrics.input_tokens == 1200
        assert session.metrics.output_tokens == 600
        assert session.metrics.total_tokens == 1800
        assert (await service.ledger.get_current(SUB)).tokens_used == 1800

    @pytest.mark.asyncio
    async def test_cost_is_sum_of_per_report_costs(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        first = await service.ingestor.record_usage("s1", 1000, 500)
        second = await service.ingestor.record_usage("s1", 200, 100)

        metrics = (await service.sessions.get("s1")).metrics
        assert first.cost.total == Decimal("0.000450")
        assert second.cost.total == Decimal("0.000090")
        assert metrics.cost_total == first.cost.total + second.cost.total
        assert metrics.cost_total == metrics.cost_input + metrics.cost_output
        assert metrics.pricing_snapshot["model"] == MINI

    @pytest.mark.asyncio
    async def test_duplicate_event_key_ignored(self, service, metric):
        await service.sessions.create(SUB, "s1", MINI)

        first = await service.ingestor.record_usage("s1", 1000, 500, event_key="resp_1")
        again = await service.ingestor.record_usage(
            "s1", 1000, 500, event_key="resp_1", channel=UsageChannel.REALTIME_EVENTS
        )

        assert first.applied is True
        assert again.duplicate is True
        assert again.applied is False
        assert again.metrics.total_tokens == 1500
        assert (await service.sessions.get("s1")).metrics.total_tokens == 1500
        assert (await service.ledger.get_current(SUB)).tokens_used == 1500
        assert metric("tutormeter_duplicate_usage_events_total", channel="realtime_events") == 1

    @pytest.mark.asyncio
    async def test_same_key_on_other_session_is_applied(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        await service.sessions.create(SUB, "s2", MINI)

        await service.ingestor.record_usage("s1", 10, 10, event_key="resp_1")
        outcome = await service.ingestor.record_usage("s2", 10, 10, event_key="resp_1")

        assert outcome.applied is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 40

    @pytest.mark.asyncio
    async def test_reports_without_key_are_all_applied(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        await service.ingestor.record_usage("s1", 10, 10)
        await service.ingestor.record_usage("s1", 10, 10)

        assert (await service.sessions.get("s1")).metrics.total_tokens == 40

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            await service.ingestor.record_usage("missing", 1, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [-1, True, 1.5, "ten"])
    async def test_invalid_deltas_rejected(self, service, bad):
        await service.sessions.create(SUB, "s1", MINI)

        with pytest.raises(InvalidUsageError):
            await service.ingestor.record_usage("s1", bad, 0)
        assert (await service.ledger.get_current(SUB)).tokens_used == 0

    @pytest.mark.asyncio
    async def test_enforce_limit_rejects_whole_report(self, service, subscribe, metric):
        await subscribe(SUB, token_limit=1000)
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_usage("s1", 600, 300)

        outcome = await service.ingestor.record_usage("s1", 100, 100, enforce_limit=True)

        assert outcome.allowed is False
        assert outcome.applied is False
        assert outcome.decision.current == 900
        assert outcome.decision.requested == 200
        assert (await service.sessions.get("s1")).metrics.total_tokens == 900
        assert (await service.ledger.get_current(SUB)).tokens_used == 900
        assert metric("tutormeter_limit_denials_total", limit_type="tokens", reason=TOKEN_LIMIT_EXCEEDED) == 1

    @pytest.mark.asyncio
    async def test_enforce_limit_allows_up_to_limit(self, service, subscribe):
        await subscribe(SUB, token_limit=1000)
        await service.sessions.create(SUB, "s1", MINI)

        outcome = await service.ingestor.record_usage("s1", 500, 500, enforce_limit=True)

        assert outcome.applied is True
        assert outcome.decision.allowed is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 1000

    @pytest.mark.asyncio
    async def test_without_enforcement_limit_is_not_checked(self, service, subscribe):
        await subscribe(SUB, token_limit=10)
        await service.sessions.create(SUB, "s1", MINI)

        outcome = await service.ingestor.record_usage("s1", 500, 500)
        assert outcome.applied is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 1000

    @pytest.mark.asyncio
    async def test_unpriced_model_writes_nothing(self, service):
        await service.sessions.create(SUB, "s1", "custom-model")

        with pytest.raises(PricingConfigurationError):
            await service.ingestor.record_usage("s1", 10, 10)

        assert (await service.sessions.get("s1")).metrics.total_tokens == 0
        assert (await service.ledger.get_current(SUB)).tokens_used == 0

    @pytest.mark.asyncio
    async def test_fallback_model_pricing(self, store, clock):
        settings = MeteringSettings(pricing_fallback_model=MINI, session_sweep_interval_seconds=0)
        service = MeteringService(store, settings, clock=clock)
        await service.sessions.create(SUB, "s1", "custom-model")

        outcome = await service.ingestor.record_usage("s1", 1000, 500)

        assert outcome.cost.total == Decimal("0.000450")
        assert outcome.metrics.pricing_snapshot["priced_as"] == MINI

    @pytest.mark.asyncio
    async def test_usage_after_finalize_is_counted(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        await service.sessions.finalize("s1")

        outcome = await service.ingestor.record_usage("s1", 10, 5)
        assert outcome.applied is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 15

    @pytest.mark.asyncio
    async def test_usage_events_are_recorded(self, service, store):
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_usage("s1", 10, 5, event_key="resp_1", event_data={"turn": 1})
        await service.ingestor.record_usage("s1", 10, 5, event_key="resp_1")

        events = await store.list_usage_events("s1")
        assert len(events) == 1
        assert events[0].channel == "metrics_api"
        assert events[0].event_key == "resp_1"
        assert events[0].event_data == {"turn": 1}
        # 10 * 0.15 / 1M = 0.0000015 rounds half up to 0.000002
        assert events[0].cost_total == Decimal("0.000002") + Decimal("0.000003")

    @pytest.mark.asyncio
    async def test_tokens_and_cost_are_counted(self, service, metric):
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_usage("s1", 1000, 500)

        assert metric("tutormeter_tokens_total", model=MINI, type="input", channel="metrics_api") == 1000
        assert metric("tutormeter_tokens_total", model=MINI, type="output", channel="metrics_api") == 500
        assert metric("tutormeter_cost_usd_total", model=MINI) == pytest.approx(0.00045)

    @pytest.mark.asyncio
    async def test_outcome_to_dict(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        outcome = await service.ingestor.record_usage("s1", 1000, 500)

        data = outcome.to_dict()
        assert data["applied"] is True
        assert data["cost"]["total"] == "0.000450"
        assert data["metrics"]["total_tokens"] == 1500
        assert data["ledger"] == {"year_month": "2025-03", "tokens_used": 1500, "sessions_count": 1}


# ============================================================
# Realtime Event Parsing Tests
# ============================================================

class TestUsageObservation:
    """Tests for UsageObservation.from_realtime_event."""

    def test_response_done(self):
        event = {
            "type": "response.done",
            "event_id": "evt_1",
            "response": {
                "id": "resp_123",
                "usage": {"total_tokens": 300, "input_tokens": 200, "output_tokens": 100},
            },
        }
        observation = UsageObservation.from_realtime_event(event)

        assert observation.input_tokens == 200
        assert observation.output_tokens == 100
        assert observation.event_key == "resp_123"
        assert observation.event_type == "response.done"

    def test_transcription_completed(self):
        event = {
            "type": "conversation.item.input_audio_transcription.completed",
            "event_id": "evt_2",
            "item_id": "item_9",
            "usage": {"type": "tokens", "input_tokens": 40, "output_tokens": 12},
        }
        observation = UsageObservation.from_realtime_event(event)

        assert (observation.input_tokens, observation.output_tokens) == (40, 12)
        assert observation.event_key == "item_9"

    def test_top_level_counts(self):
        observation = UsageObservation.from_realtime_event({"input_tokens": 7, "event_id": "evt_3"})
        assert (observation.input_tokens, observation.output_tokens) == (7, 0)
        assert observation.event_key == "evt_3"

    def test_event_without_usage(self):
        assert UsageObservation.from_realtime_event({"type": "response.audio.delta", "delta": "..."}) is None
        assert UsageObservation.from_realtime_event({"type": "response.done", "response": {"id": "r"}}) is None

    def test_event_without_identifiers_has_no_key(self):
        observation = UsageObservation.from_realtime_event({"usage": {"input_tokens": 1}})
        assert observation.event_key is None

    def test_non_object_rejected(self):
        with pytest.raises(InvalidUsageError):
            UsageObservation.from_realtime_event(["not", "a", "dict"])

    def test_negative_usage_rejected(self):
        with pytest.raises(InvalidUsageError):
            UsageObservation.from_realtime_event({"usage": {"input_tokens": -3}})

    @pytest.mark.asyncio
    async def test_same_event_forwarded_twice_counts_once(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        event = {
            "type": "response.done",
            "response": {"id": "resp_1", "usage": {"input_tokens": 200, "output_tokens": 100}},
        }

        first = await service.ingestor.record_observation("s1", UsageObservation.from_realtime_event(event))
        second = await service.ingestor.record_observation("s1", UsageObservation.from_realtime_event(event))

        assert first.applied is True
        assert second.duplicate is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 300

    @pytest.mark.asyncio
    async def test_metrics_api_and_event_with_same_key_count_once(self, service, store):
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_usage("s1", 200, 100, event_key="resp_1")

        event = {"type": "response.done", "response": {"id": "resp_1", "usage": {"input_tokens": 200, "output_tokens": 100}}}
        outcome = await service.ingestor.record_observation("s1", UsageObservation.from_realtime_event(event))

        assert outcome.duplicate is True
        events = await store.list_usage_events("s1")
        assert [e.channel for e in events] == ["metrics_api"]


# ============================================================
# Plans & Subscriptions
# ============================================================

class TestPlansAndSubscriptions:
    """Plan and subscription reads of the store."""

    @pytest.mark.asyncio
    async def test_get_plan(self, store):
        plan = await store.create_plan("starter", monthly_token_limit=5000)

        loaded = await store.get_plan(plan.id)

        assert loaded.name == "starter"
        assert loaded.monthly_token_limit == 5000
        assert loaded.monthly_session_limit is None
        assert await store.get_plan(plan.id + 100) is None

    @pytest.mark.asyncio
    async def test_subscribing_to_unknown_plan(self, store, clock):
        with pytest.raises(PlanNotFoundError):
            await store.create_subscription(SUB, 42, start_date=clock())

    @pytest.mark.asyncio
    async def test_new_subscription_replaces_previous(self, store, clock):
        basic = await store.create_plan("basic", monthly_token_limit=1000)
        pro = await store.create_plan("pro", monthly_token_limit=100_000)
        await store.create_subscription(SUB, basic.id, start_date=clock() - timedelta(days=10))
        await store.create_subscription(SUB, pro.id, start_date=clock() - timedelta(days=1))

        subscription = await store.get_active_subscription(SUB, clock())

        assert subscription.plan_id == pro.id
        assert (await store.get_active_plan(SUB, clock())).name == "pro"

    @pytest.mark.asyncio
    async def test_subscription_window(self, store, clock):
        plan = await store.create_plan("trial", monthly_session_limit=3)
        await store.create_subscription(
            SUB, plan.id, start_date=clock() + timedelta(days=1), end_date=clock() + timedelta(days=8)
        )

        assert await store.get_active_subscription(SUB, clock()) is None
        assert await store.get_active_subscription(SUB, clock() + timedelta(days=2)) is not None
        assert await store.get_active_subscription(SUB, clock() + timedelta(days=8)) is None
