"""
TutorMeter - Configuration & Service Lifecycle Tests
"""

import asyncio

import pytest

from tutormeter.config import DEFAULT_MODEL, MeteringSettings, StoreBackend
from tutormeter.db import InMemoryMeteringStore
from tutormeter.db.models import SessionStatus
from tutormeter.db.postgres import PostgresMeteringStore
from tutormeter.usage import MeteringService
from tutormeter.usage.service import create_store


ENV_VARS = (
    "DATABASE_URL",
    "STORE_BACKEND",
    "ALLOW_USAGE_WITHOUT_SUBSCRIPTION",
    "STORE_TIMEOUT_SECONDS",
    "SESSION_IDLE_TIMEOUT_SECONDS",
    "SESSION_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_MODEL",
    "PRICING_FALLBACK_MODEL",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "CORS_ALLOW_ORIGINS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettingsFromEnv:
    """MeteringSettings.from_env()."""

    def test_defaults(self, clean_env):
        settings = MeteringSettings.from_env()

        assert settings.store_backend == StoreBackend.MEMORY
        assert settings.database_url is None
        assert settings.allow_usage_without_subscription is False
        assert settings.store_timeout_seconds == 5.0
        assert settings.session_idle_timeout_seconds == 1800.0
        assert settings.session_sweep_interval_seconds == 60.0
        assert settings.default_model == DEFAULT_MODEL
        assert settings.pricing_fallback_model is None
        assert settings.log_format == "json"
        assert settings.cors_allow_origins == []

    def test_database_url_selects_postgres(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://localhost/tutormeter")
        assert MeteringSettings.from_env().store_backend == StoreBackend.POSTGRES

    def test_explicit_backend_wins(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://localhost/tutormeter")
        clean_env.setenv("STORE_BACKEND", "memory")
        assert MeteringSettings.from_env().store_backend == StoreBackend.MEMORY

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("STORE_BACKEND", "redis")
        with pytest.raises(ValueError, match="STORE_BACKEND"):
            MeteringSettings.from_env()

    @pytest.mark.parametrize("raw,expected", [("1", True), ("TRUE", True), (" yes ", True), ("off", False), ("", False)])
    def test_boolean_values(self, clean_env, raw, expected):
        clean_env.setenv("ALLOW_USAGE_WITHOUT_SUBSCRIPTION", raw)
        assert MeteringSettings.from_env().allow_usage_without_subscription is expected

    def test_invalid_boolean(self, clean_env):
        clean_env.setenv("ALLOW_USAGE_WITHOUT_SUBSCRIPTION", "maybe")
        with pytest.raises(ValueError, match="ALLOW_USAGE_WITHOUT_SUBSCRIPTION"):
            MeteringSettings.from_env()

    def test_invalid_number(self, clean_env):
        clean_env.setenv("STORE_TIMEOUT_SECONDS", "fast")
        with pytest.raises(ValueError, match="STORE_TIMEOUT_SECONDS"):
            MeteringSettings.from_env()

    def test_overrides(self, clean_env):
        clean_env.setenv("STORE_TIMEOUT_SECONDS", "2.5")
        clean_env.setenv("SESSION_SWEEP_INTERVAL_SECONDS", "0")
        clean_env.setenv("DEFAULT_MODEL", "gpt-realtime")
        clean_env.setenv("PRICING_FALLBACK_MODEL", "gpt-realtime-mini")
        clean_env.setenv("LOG_LEVEL", "debug")
        clean_env.setenv("LOG_FORMAT", "TEXT")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

        settings = MeteringSettings.from_env()

        assert settings.store_timeout_seconds == 2.5
        assert settings.session_sweep_interval_seconds == 0
        assert settings.default_model == "gpt-realtime"
        assert settings.pricing_fallback_model == "gpt-realtime-mini"
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "text"
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


class TestSettingsValidation:
    """MeteringSettings.validate()."""

    def test_valid_settings_are_returned(self):
        settings = MeteringSettings()
        assert settings.validate() is settings

    @pytest.mark.parametrize("overrides,message", [
        ({"store_backend": StoreBackend.POSTGRES}, "DATABASE_URL"),
        ({"store_timeout_seconds": 0}, "STORE_TIMEOUT_SECONDS"),
        ({"session_idle_timeout_seconds": -1}, "SESSION_IDLE_TIMEOUT_SECONDS"),
        ({"session_sweep_interval_seconds": -5}, "SESSION_SWEEP_INTERVAL_SECONDS"),
        ({"log_format": "xml"}, "LOG_FORMAT"),
        (
            {"store_backend": StoreBackend.POSTGRES, "database_url": "postgresql://h/db", "cors_allow_origins": ["*"]},
            "CORS_ALLOW_ORIGINS",
        ),
    ])
    def test_invalid_settings(self, overrides, message):
        with pytest.raises(RuntimeError, match=message):
            MeteringSettings(**overrides).validate()

    def test_wildcard_cors_allowed_in_memory(self):
        MeteringSettings(cors_allow_origins=["*"]).validate()


class TestMeteringService:
    """Service wiring and lifecycle."""

    def test_create_store_per_backend(self):
        assert isinstance(create_store(MeteringSettings()), InMemoryMeteringStore)

        postgres = create_store(
            MeteringSettings(store_backend=StoreBackend.POSTGRES, database_url="postgresql://h/db")
        )
        assert isinstance(postgres, PostgresMeteringStore)

    def test_from_settings_validates(self):
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            MeteringService.from_settings(MeteringSettings(store_backend=StoreBackend.POSTGRES))

    def test_components_share_store_and_timeout(self, store, clock):
        service = MeteringService(store, MeteringSettings(store_timeout_seconds=1.5), clock=clock)

        assert service.sessions.store is store
        assert service.ingestor.store is store
        assert service.limits.store_timeout == 1.5
        assert service.ledger.store_timeout == 1.5

    @pytest.mark.asyncio
    async def test_start_and_stop_without_sweeper(self, service):
        await service.start()
        assert service._sweeper is None
        await service.stop()

    @pytest.mark.asyncio
    async def test_sweeper_abandons_idle_sessions(self, store, clock):
        settings = MeteringSettings(session_idle_timeout_seconds=60, session_sweep_interval_seconds=0.01)
        service = MeteringService(store, settings, clock=clock)
        await service.sessions.create("user-1", "idle", DEFAULT_MODEL)
        clock.advance(seconds=30)
        await service.sessions.create("user-1", "fresh", DEFAULT_MODEL)
        clock.advance(seconds=45)

        await service.start()
        try:
            for _ in range(50):
                if (await store.get_session("idle")).status == SessionStatus.ABANDONED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await service.stop()

        assert (await store.get_session("idle")).status == SessionStatus.ABANDONED
        assert (await store.get_session("fresh")).status == SessionStatus.ACTIVE
        assert service._sweeper is None

    @pytest.mark.asyncio
    async def test_sweeper_survives_store_failure(self, clock, monkeypatch):
        store = InMemoryMeteringStore()
        settings = MeteringSettings(session_sweep_interval_seconds=0.01)
        service = MeteringService(store, settings, clock=clock)
        calls = []

        async def failing_expire(cutoff):
            calls.append(cutoff)
            raise ConnectionResetError("connection reset by peer")

        monkeypatch.setattr(store, "expire_stale_sessions", failing_expire)

        await service.start()
        try:
            for _ in range(50):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
            assert not service._sweeper.done()
        finally:
            await service.stop()

        assert len(calls) >= 2
