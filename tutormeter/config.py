"""
TutorMeter - Configuration

Settings are read from environment variables once at startup and passed
explicitly to the components that need them.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

DEFAULT_MODEL = "gpt-4o-mini-realtime-preview"


class StoreBackend(str, Enum):
    """Where metering state lives."""

    POSTGRES = "postgres"
    MEMORY = "memory"   # Process-local, for local runs and tests


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid number for {name}: {raw!r}")


def get_cors_allowed_origins() -> List[str]:
    """Parse CORS_ALLOW_ORIGINS from environment."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "")
    if not raw.strip():
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass
class MeteringSettings:
    """Runtime settings of the metering service."""

    store_backend: StoreBackend = StoreBackend.MEMORY
    database_url: Optional[str] = None

    # No subscription: allow with a warning (True) or deny (False)
    allow_usage_without_subscription: bool = False

    store_timeout_seconds: float = 5.0
    session_idle_timeout_seconds: float = 1800.0
    # 0 disables the background stale-session sweep
    session_sweep_interval_seconds: float = 60.0

    default_model: str = DEFAULT_MODEL
    pricing_fallback_model: Optional[str] = None

    log_level: str = "INFO"
    log_format: str = "json"
    cors_allow_origins: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "MeteringSettings":
        """
        Build settings from the environment.

        STORE_BACKEND defaults to postgres when DATABASE_URL is set and to
        memory otherwise.
        """
        database_url = os.getenv("DATABASE_URL") or None
        backend_raw = os.getenv("STORE_BACKEND", "").strip().lower()
        if not backend_raw:
            backend_raw = StoreBackend.POSTGRES.value if database_url else StoreBackend.MEMORY.value
        try:
            backend = StoreBackend(backend_raw)
        except ValueError:
            raise ValueError("Invalid STORE_BACKEND. Use one of: postgres, memory")

        return cls(
            store_backend=backend,
            database_url=database_url,
            allow_usage_without_subscription=_env_bool("ALLOW_USAGE_WITHOUT_SUBSCRIPTION", False),
            store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 5.0),
            session_idle_timeout_seconds=_env_float("SESSION_IDLE_TIMEOUT_SECONDS", 1800.0),
            session_sweep_interval_seconds=_env_float("SESSION_SWEEP_INTERVAL_SECONDS", 60.0),
            default_model=os.getenv("DEFAULT_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL,
            pricing_fallback_model=os.getenv("PRICING_FALLBACK_MODEL", "").strip() or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
            cors_allow_origins=get_cors_allowed_origins(),
        )

    def validate(self) -> "MeteringSettings":
        """Fail closed on settings the service cannot run safely with."""
        if self.store_backend == StoreBackend.POSTGRES and not self.database_url:
            raise RuntimeError("DATABASE_URL is required when STORE_BACKEND=postgres")

        if self.store_timeout_seconds <= 0:
            raise RuntimeError("STORE_TIMEOUT_SECONDS must be positive")

        if self.session_idle_timeout_seconds <= 0:
            raise RuntimeError("SESSION_IDLE_TIMEOUT_SECONDS must be positive")

        if self.session_sweep_interval_seconds < 0:
            raise RuntimeError("SESSION_SWEEP_INTERVAL_SECONDS cannot be negative")

        if self.log_format not in {"json", "text"}:
            raise RuntimeError("LOG_FORMAT must be 'json' or 'text'")

        if "*" in self.cors_allow_origins and self.store_backend == StoreBackend.POSTGRES:
            raise RuntimeError("CORS_ALLOW_ORIGINS cannot include '*' with a persistent store")

        return self
