"""
TutorMeter - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- A fresh Prometheus registry per test
- A controllable clock, in-memory store and metering service
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from prometheus_client import CollectorRegistry

from tutormeter.config import MeteringSettings
from tutormeter.db import InMemoryMeteringStore
from tutormeter.observability.metrics import setup_metrics
from tutormeter.usage import MeteringService


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1 and DATABASE_URL)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Clock
# ============================================================

FIXED_NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================
# Metrics
# ============================================================

@pytest.fixture(autouse=True)
def metrics_registry():
    """Isolated Prometheus registry so counters start at zero in every test."""
    registry = CollectorRegistry()
    setup_metrics(registry)
    return registry


@pytest.fixture
def metric(metrics_registry):
    """
    Read a sample from the test registry, 0.0 when the series does not exist.

    Usage:
        assert metric("tutormeter_sessions_total", model="m", outcome="created") == 1
    """
    def _value(name: str, **labels) -> float:
        return metrics_registry.get_sample_value(name, labels) or 0.0

    return _value


# ============================================================
# Store & Service
# ============================================================

@pytest.fixture
def settings() -> MeteringSettings:
    return MeteringSettings(session_sweep_interval_seconds=0)


@pytest.fixture
def store() -> InMemoryMeteringStore:
    return InMemoryMeteringStore()


@pytest.fixture
def service(store, settings, clock) -> MeteringService:
    return MeteringService(store, settings, clock=clock)


@pytest.fixture
def subscribe(store, clock):
    """
    Put a subscriber on a new plan.

    Usage:
        plan = await subscribe("user-1", token_limit=10_000, session_limit=5)
    """
    async def _subscribe(
        subscriber_id: str,
        token_limit: Optional[int] = None,
        session_limit: Optional[int] = None,
        name: str = "test-plan",
    ):
        plan = await store.create_plan(
            name,
            monthly_token_limit=token_limit,
            monthly_session_limit=session_limit,
        )
        await store.create_subscription(
            subscriber_id,
            plan.id,
            start_date=clock() - timedelta(days=1),
        )
        return plan

    return _subscribe


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield


# ============================================================
# Skip Helpers
# ============================================================

requires_integration = pytest.mark.skipif(
    not RUN_INTEGRATION,
    reason="Requires RUN_INTEGRATION=1"
)
