"""Environment-driven configuration for regmirror."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/regmirror.db"
DEFAULT_SYNC_INTERVAL_SECONDS = 300


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_int(name: str, value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using default {default}")
        return default


def _parse_float(name: str, value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {value!r}, using default {default}")
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the registry mirror.

    Attributes:
        registry_url: Base URL of the registry (e.g., "https://registry.example.com")
        registry_username: Basic-auth username, if the registry requires it
        registry_password: Basic-auth password
        public_api_url: Public base URL of this service (used in logs and links)
        sync_interval_seconds: Period of the scheduled sync
        sync_enabled: Whether the scheduled sync runs at all
        sync_on_start: Run one sync immediately when the scheduler starts
        request_timeout: Per-request HTTP timeout in seconds
        max_concurrency: Upper bound on in-flight registry requests during a crawl
        database_url: SQLAlchemy async database URL
        log_level: Root log level
    """

    registry_url: str = "http://localhost:5000"
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None
    public_api_url: Optional[str] = None
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    sync_enabled: bool = True
    sync_on_start: bool = True
    request_timeout: float = 30.0
    max_concurrency: int = 10
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"

    @property
    def basic_auth(self) -> Optional[tuple[str, str]]:
        """Return (username, password) when both are configured."""
        if self.registry_username and self.registry_password:
            return (self.registry_username, self.registry_password)
        return None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Populated Settings instance
        """
        env = os.environ if environ is None else environ

        interval = _parse_int(
            "SYNC_INTERVAL_SECONDS",
            env.get("SYNC_INTERVAL_SECONDS"),
            DEFAULT_SYNC_INTERVAL_SECONDS,
        )
        if interval <= 0:
            logger.warning(
                f"SYNC_INTERVAL_SECONDS must be positive, using default {DEFAULT_SYNC_INTERVAL_SECONDS}"
            )
            interval = DEFAULT_SYNC_INTERVAL_SECONDS

        max_concurrency = _parse_int("REGISTRY_MAX_CONCURRENCY", env.get("REGISTRY_MAX_CONCURRENCY"), 10)

        return cls(
            registry_url=env.get("REGISTRY_URL", "http://localhost:5000").rstrip("/"),
            registry_username=env.get("REGISTRY_USERNAME") or None,
            registry_password=env.get("REGISTRY_PASSWORD") or None,
            public_api_url=env.get("PUBLIC_API_URL") or None,
            sync_interval_seconds=interval,
            sync_enabled=_parse_bool(env.get("SYNC_ENABLED"), True),
            sync_on_start=_parse_bool(env.get("SYNC_ON_START"), True),
            request_timeout=_parse_float("REGISTRY_TIMEOUT", env.get("REGISTRY_TIMEOUT"), 30.0),
            max_concurrency=max(1, max_concurrency),
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
