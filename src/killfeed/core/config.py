"""
Killfeed Centralized Configuration

Provides validated, type-safe access to all environment variables using Pydantic Settings.
All environment variables are validated at first access with helpful error messages.

Usage:
    from killfeed.core.config import get_settings

    settings = get_settings()
    if settings.redisq_enabled:
        ...

Data Paths:
    All data is stored in {instance_root}/cache/:
    - cache/killfeed.db: Killmail store (kills, losses, checkpoints, roster)

Environment Variables:
    KILLFEED_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    KILLFEED_DEBUG: Legacy debug flag (enables DEBUG level if set)
    KILLFEED_LOG_JSON: Output logs as JSON
    KILLFEED_DATABASE_PATH: Override the SQLite database location
    KILLFEED_REDISQ_ENABLED: Enable the RedisQ long-poll consumer
    KILLFEED_WEBSOCKET_ENABLED: Enable the wanderer-kills websocket consumer
    KILLFEED_WEBSOCKET_URL: Phoenix socket URL for the push feed
    KILLFEED_BREAKER_THRESHOLD / KILLFEED_BREAKER_COOLDOWN_SECONDS: Circuit breaker tuning
    KILLFEED_ENRICHMENT_INTERVAL_MINUTES: Period of the enrichment job
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_project_root() -> Path | None:
    """
    Find the project root by searching for pyproject.toml.

    Returns:
        Path to the project root, or None if not found
    """
    current = Path(__file__).resolve().parent

    for _ in range(10):  # Limit search depth
        if (current / "pyproject.toml").exists():
            return current
        parent = current.parent
        if parent == current:
            break  # Reached filesystem root
        current = parent

    return None


def _find_project_env_file() -> Path | None:
    """Return the project's .env file if one exists next to pyproject.toml."""
    root = _find_project_root()
    if root is None:
        return None
    env_file = root / ".env"
    return env_file if env_file.exists() else None


def _find_instance_root() -> Path:
    """
    Find the killfeed instance root directory.

    Resolution order:
    1. KILLFEED_INSTANCE_ROOT environment variable (explicit override)
    2. Project root (directory containing pyproject.toml)
    3. Current working directory (fallback)
    """
    import os

    override = os.environ.get("KILLFEED_INSTANCE_ROOT")
    if override:
        return Path(override)

    return _find_project_root() or Path.cwd()


_ENV_FILE = _find_project_env_file()
_INSTANCE_ROOT = _find_instance_root()


class KillfeedSettings(BaseSettings):
    """
    Killfeed configuration settings with validation.

    Environment variables are automatically loaded with the KILLFEED_ prefix.
    All settings have sensible defaults and validation.
    """

    model_config = SettingsConfigDict(
        env_prefix="KILLFEED_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Log level for killfeed components",
    )

    debug: bool = Field(
        default=False,
        description="Legacy debug flag (enables DEBUG level if set)",
    )

    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format for machine parsing",
    )

    # =========================================================================
    # Data Paths
    # =========================================================================

    instance_root: Path = Field(
        default=_INSTANCE_ROOT,
        description="Instance root directory (project root containing pyproject.toml)",
    )

    database_path: Optional[Path] = Field(
        default=None,
        description="SQLite database path (defaults to {instance_root}/cache/killfeed.db)",
    )

    # =========================================================================
    # Upstream Services
    # =========================================================================

    user_agent: str = Field(
        default="killfeed/1.0 (killmail ingestion)",
        description="User-Agent header sent to every upstream service",
    )

    esi_base_url: str = Field(
        default="https://esi.evetech.net/latest",
        description="ESI base URL (full killmail detail)",
    )

    zkill_base_url: str = Field(
        default="https://zkillboard.com/api",
        description="zKillboard API base URL (hash, valuation, character history)",
    )

    # =========================================================================
    # Retry and Circuit Breaker
    # =========================================================================

    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts per upstream call")

    retry_initial_delay_seconds: float = Field(
        default=5.0, ge=0, description="Delay before the second attempt"
    )

    retry_max_delay_seconds: float = Field(
        default=30.0, ge=0, description="Upper bound on the backoff delay"
    )

    zkill_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Per-attempt timeout for zKillboard calls"
    )

    esi_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-attempt timeout for ESI calls"
    )

    breaker_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before a breaker opens"
    )

    breaker_cooldown_seconds: float = Field(
        default=30.0, ge=0, description="Seconds an open breaker rejects calls"
    )

    batch_size: int = Field(
        default=5, ge=1, description="Concurrent items per backfill/enrichment batch"
    )

    # =========================================================================
    # Backfill
    # =========================================================================

    backfill_max_age_days: int = Field(default=30, ge=1)
    backfill_max_pages: int = Field(default=20, ge=1)
    backfill_max_records: int = Field(default=500, ge=1)
    backfill_max_consecutive_empty: int = Field(default=5, ge=1)
    backfill_workers: int = Field(default=3, ge=1)
    backfill_skip_recent_minutes: int = Field(
        default=60,
        ge=0,
        description="Skip characters backfilled more recently than this (0 = never skip)",
    )
    backfill_on_start: bool = Field(default=False)

    # =========================================================================
    # Enrichment
    # =========================================================================

    enrichment_enabled: bool = Field(default=True)
    enrichment_interval_minutes: float = Field(default=15.0, gt=0)
    enrichment_batch_size: int = Field(default=50, ge=1)

    # =========================================================================
    # Roster
    # =========================================================================

    roster_refresh_seconds: float = Field(
        default=300.0, gt=0, description="Tracked-character snapshot refresh period"
    )

    # =========================================================================
    # RedisQ Long-Poll Consumer
    # =========================================================================

    redisq_enabled: bool = Field(
        default=False,
        description="Enable RedisQ real-time killmail streaming",
    )

    redisq_url: str = Field(default="https://zkillredisq.stream/listen.php")

    redisq_queue_id: str = Field(
        default="",
        description="RedisQ queue identifier (generated when empty)",
    )

    redisq_ttw_seconds: int = Field(
        default=10, ge=1, le=10, description="Server-side wait per long-poll"
    )

    redisq_error_backoff_seconds: float = Field(default=5.0, ge=0)

    # =========================================================================
    # Wanderer-Kills Websocket Consumer
    # =========================================================================

    websocket_enabled: bool = Field(default=False)
    websocket_url: str = Field(default="ws://localhost:4004/socket/websocket")
    websocket_max_characters: int = Field(default=1000, ge=1)
    websocket_max_systems: int = Field(default=100, ge=0)
    websocket_preload_enabled: bool = Field(default=False)
    websocket_preload_limit_per_system: int = Field(default=5, ge=1)
    websocket_preload_since_hours: int = Field(default=24, ge=1)
    websocket_preload_delivery_batch_size: int = Field(default=10, ge=1)
    websocket_preload_delivery_interval_ms: int = Field(default=1000, ge=0)

    # =========================================================================
    # Metrics
    # =========================================================================

    metrics_log_interval_seconds: float = Field(
        default=60.0, ge=0, description="Period of the metrics log line (0 = disabled)"
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def effective_log_level(self) -> str:
        """
        Get effective log level, respecting legacy KILLFEED_DEBUG.

        Priority:
        1. Explicit KILLFEED_LOG_LEVEL
        2. KILLFEED_DEBUG=1 -> DEBUG
        3. Default: WARNING
        """
        if self.debug and self.log_level == "WARNING":
            return "DEBUG"
        return self.log_level

    @property
    def log_level_int(self) -> int:
        """Get effective log level as logging constant."""
        return getattr(logging, self.effective_log_level)

    @property
    def cache_dir(self) -> Path:
        """Path to cache directory."""
        return self.instance_root / "cache"

    @property
    def killmail_db_path(self) -> Path:
        """Path to the killmail database."""
        if self.database_path is not None:
            return self.database_path
        return self.cache_dir / "killfeed.db"


# =============================================================================
# Singleton Accessor
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> KillfeedSettings:
    """
    Get the singleton settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    The settings are validated at first access.

    Returns:
        KillfeedSettings instance with validated configuration
    """
    return KillfeedSettings()


def reset_settings() -> None:
    """
    Reset the settings cache (for testing).

    After calling this, the next get_settings() call will
    reload settings from environment variables.
    """
    get_settings.cache_clear()


# =============================================================================
# Convenience Functions
# =============================================================================


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled."""
    return get_settings().effective_log_level == "DEBUG"


def is_json_logging() -> bool:
    """Check if JSON logging is enabled."""
    return get_settings().log_json
