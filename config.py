# config.py – Centralized configuration with validation
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional


def _getenv_bool(key: str, default: bool = False) -> bool:
    """Helper to parse boolean environment variables consistently."""
    value = os.getenv(key, str(default)).lower()
    return value in ("1", "true", "yes", "y", "on")


def _getenv_int(key: str, default: int) -> int:
    """Helper to parse integer environment variables with validation."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: {os.getenv(key)}")


def _getenv_float(key: str, default: float) -> float:
    """Helper to parse float environment variables with validation."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: {os.getenv(key)}")


# Fields read the environment when a Config is built, not when this module
# is imported, so a bad value surfaces through Config() and load_config().
def _env_str(key: str, default: str):
    return field(default_factory=lambda: os.getenv(key, default))


def _env_int(key: str, default: int):
    return field(default_factory=lambda: _getenv_int(key, default))


def _env_float(key: str, default: float):
    return field(default_factory=lambda: _getenv_float(key, default))


def _env_bool(key: str, default: bool):
    return field(default_factory=lambda: _getenv_bool(key, default))


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    url: str = _env_str("DATABASE_URL", "")
    pool_min_size: int = _env_int("DB_POOL_MIN_SIZE", 1)
    pool_max_size: int = _env_int("DB_POOL_MAX_SIZE", 10)

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class ZkillConfig:
    """zKillboard API + RedisQ push feed."""
    base_url: str = _env_str("ZKILL_BASE_URL", "https://zkillboard.com/api")
    redisq_url: str = _env_str("REDISQ_URL", "https://zkillredisq.stream/listen.php")
    queue_id: str = _env_str("REDISQ_QUEUE_ID", "killmail-ingest")
    ttw: int = _env_int("REDISQ_TTW", 10)  # server-side long-poll wait (seconds)
    redisq_min_interval_sec: float = _env_float("REDISQ_MIN_INTERVAL_SEC", 0.5)
    min_interval_sec: float = _env_float("ZKILL_MIN_INTERVAL_SEC", 1.0)
    user_agent: str = _env_str("ZKILL_USER_AGENT", "killmail-ingest/1.0")

    def __post_init__(self):
        if self.ttw < 1 or self.ttw > 10:
            raise ValueError("REDISQ_TTW must be between 1 and 10")


@dataclass(frozen=True)
class EsiConfig:
    """EVE Swagger Interface (enrichment lookups)."""
    base_url: str = _env_str("ESI_BASE_URL", "https://esi.evetech.net/latest")
    min_interval_sec: float = _env_float("ESI_MIN_INTERVAL_SEC", 0.1)


@dataclass(frozen=True)
class RetryConfig:
    """Shared backoff parameters for outbound HTTP calls."""
    max_retries: int = _env_int("HTTP_MAX_RETRIES", 3)
    base_delay_sec: float = _env_float("HTTP_BACKOFF_BASE_SEC", 1.0)
    factor: float = _env_float("HTTP_BACKOFF_FACTOR", 2.0)
    cap_sec: float = _env_float("HTTP_BACKOFF_CAP_SEC", 60.0)
    base_timeout_sec: float = _env_float("HTTP_TIMEOUT_SEC", 30.0)
    timeout_cap_sec: float = _env_float("HTTP_TIMEOUT_CAP_SEC", 120.0)
    jitter: float = _env_float("HTTP_BACKOFF_JITTER", 0.1)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("HTTP_MAX_RETRIES must be >= 0")
        if self.factor < 1.0:
            raise ValueError("HTTP_BACKOFF_FACTOR must be >= 1.0")
        if self.cap_sec < self.base_delay_sec:
            raise ValueError("HTTP_BACKOFF_CAP_SEC must be >= HTTP_BACKOFF_BASE_SEC")
        if self.timeout_cap_sec < self.base_timeout_sec:
            raise ValueError("HTTP_TIMEOUT_CAP_SEC must be >= HTTP_TIMEOUT_SEC")
        if not (0.0 <= self.jitter < 1.0):
            raise ValueError("HTTP_BACKOFF_JITTER must be between 0.0 and 1.0")


@dataclass(frozen=True)
class IngestConfig:
    """Pipeline, feed and scheduler settings."""
    stream_name: str = _env_str("INGEST_STREAM_NAME", "killmails")
    registry_refresh_sec: float = _env_float("REGISTRY_REFRESH_SEC", 300)
    catchup_enabled: bool = _env_bool("CATCHUP_ENABLED", True)
    catchup_interval_sec: float = _env_float("CATCHUP_INTERVAL_SEC", 3600)
    catchup_max_pages: int = _env_int("CATCHUP_MAX_PAGES", 5)
    backfill_max_pages: int = _env_int("BACKFILL_MAX_PAGES", 5)
    backfill_page_delay_sec: float = _env_float("BACKFILL_PAGE_DELAY_SEC", 1.0)
    pipeline_max_attempts: int = _env_int("PIPELINE_MAX_ATTEMPTS", 3)
    pipeline_retry_base_sec: float = _env_float("PIPELINE_RETRY_BASE_SEC", 1.0)
    metrics_window_sec: float = _env_float("METRICS_WINDOW_SEC", 60)
    shutdown_grace_sec: float = _env_float("SHUTDOWN_GRACE_SEC", 10)
    enrichment_sweep_enabled: bool = _env_bool("ENRICHMENT_SWEEP_ENABLED", True)
    enrichment_sweep_interval_sec: float = _env_float("ENRICHMENT_SWEEP_INTERVAL_SEC", 900)
    enrichment_sweep_batch: int = _env_int("ENRICHMENT_SWEEP_BATCH", 50)
    enrichment_sweep_max_attempts: int = _env_int("ENRICHMENT_SWEEP_MAX_ATTEMPTS", 5)

    def __post_init__(self):
        """Validate ingest configuration."""
        if not self.stream_name:
            raise ValueError("INGEST_STREAM_NAME must not be empty")
        for name in ("registry_refresh_sec", "catchup_interval_sec",
                     "metrics_window_sec", "enrichment_sweep_interval_sec"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be > 0")
        if self.backfill_page_delay_sec < 0:
            raise ValueError("BACKFILL_PAGE_DELAY_SEC must be >= 0")
        if self.pipeline_max_attempts < 1:
            raise ValueError("PIPELINE_MAX_ATTEMPTS must be >= 1")
        if self.enrichment_sweep_max_attempts < 1:
            raise ValueError("ENRICHMENT_SWEEP_MAX_ATTEMPTS must be >= 1")
        if self.catchup_max_pages < 1 or self.backfill_max_pages < 1:
            raise ValueError("CATCHUP_MAX_PAGES and BACKFILL_MAX_PAGES must be >= 1")


@dataclass(frozen=True)
class Config:
    """Master configuration object."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    zkill: ZkillConfig = field(default_factory=ZkillConfig)
    esi: EsiConfig = field(default_factory=EsiConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)

    def validate(self):
        """Validate the complete configuration."""
        if not self.database.is_configured:
            raise ValueError("DATABASE_URL must be set")
        self.zkill.__post_init__()
        self.retry.__post_init__()
        self.ingest.__post_init__()


def load_config() -> Config:
    """Build the configuration from the current environment and validate it.

    Raises ValueError naming the offending setting.
    """
    config = Config()
    config.validate()
    return config


# Global config instance; None when the environment holds an invalid value,
# which ingest_worker.main() reports through load_config().
try:
    CONFIG: Optional[Config] = Config()
except ValueError:
    CONFIG = None
