"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``WOW_HARVESTER_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

Workers, sweeps and CLI commands receive an ``AppConfig`` instance, never raw
dicts or individual env var lookups scattered through the codebase.  The one
exception is upstream credentials, which are read from the environment by
``UpstreamConfig.credentials()`` so they never land in a config snapshot.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/wow_harvester.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class RedisConfig(BaseModel):
    """Shared Redis used by the ``redis`` store and broker backends."""

    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    key_prefix: str = "harvester"
    socket_connect_timeout: float = 5.0
    health_check_interval: int = 30

    def resolved_url(self) -> str:
        """Return ``url`` if set, else one built from host/port/db."""
        return self.url or f"redis://{self.host}:{self.port}/{self.db}"


class BrokerConfig(BaseModel):
    """Job distribution settings."""

    model_config = ConfigDict(frozen=True)

    backend: str = "memory"
    max_attempts: int = 3
    max_transient_attempts: int = 10
    request_timeout_seconds: float = 5.0
    poll_timeout_seconds: float = 1.0

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in {"memory", "redis"}:
            raise ValueError(f"broker.backend must be 'memory' or 'redis', got '{v}'.")
        return v

    @field_validator("max_attempts", "max_transient_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Attempt budgets must be >= 1, got {v}.")
        return v


class StoreConfig(BaseModel):
    """Progress / dedup store backend."""

    model_config = ConfigDict(frozen=True)

    backend: str = "memory"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in {"memory", "redis"}:
            raise ValueError(f"store.backend must be 'memory' or 'redis', got '{v}'.")
        return v


class UpstreamConfig(BaseModel):
    """Blizzard API settings.  Credentials come from the environment."""

    model_config = ConfigDict(frozen=True)

    region: str = "us"
    locale: str = "en_US"
    timeout_seconds: float = 30.0
    key_lock_errors: int = 200
    key_lock_seconds: int = 7200

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        valid = {"us", "eu", "kr", "tw"}
        if v.lower() not in valid:
            raise ValueError(f"region must be one of {sorted(valid)}, got '{v}'.")
        return v.lower()

    @field_validator("key_lock_errors", "key_lock_seconds")
    @classmethod
    def validate_key_lock(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Key lock settings must be >= 1, got {v}.")
        return v

    def credentials(self) -> dict[str, Optional[str]]:
        """Read ``BLIZZARD_*`` credentials from the environment."""
        return {
            "client_id": os.environ.get("BLIZZARD_CLIENT_ID") or None,
            "client_secret": os.environ.get("BLIZZARD_CLIENT_SECRET") or None,
            "access_token": os.environ.get("BLIZZARD_ACCESS_TOKEN") or None,
        }

    def api_keys(self) -> list[tuple[str, str]]:
        """Read the ``BLIZZARD_API_KEYS`` pool as ``(client_id, client_secret)`` pairs.

        Format: ``id1:secret1,id2:secret2``.  Empty when unset.

        Raises:
            ValueError: If an entry has no ``:`` separator.
        """
        raw = os.environ.get("BLIZZARD_API_KEYS") or ""
        pairs: list[tuple[str, str]] = []
        for entry in filter(None, (part.strip() for part in raw.split(","))):
            client_id, sep, client_secret = entry.partition(":")
            if not sep or not client_id or not client_secret:
                raise ValueError("BLIZZARD_API_KEYS entries must look like client_id:client_secret.")
            pairs.append((client_id, client_secret))
        return pairs


class RateLimitPolicy(BaseModel):
    """Adaptive delay parameters for one upstream target.

    The delay starts at ``initial_delay_ms``, is multiplied by
    ``backoff_factor`` on every rate-limit signal and divided by
    ``recovery_factor`` after ``recovery_threshold`` consecutive successes.
    """

    model_config = ConfigDict(frozen=True)

    initial_delay_ms: float = 100.0
    backoff_factor: float = 1.5
    recovery_factor: float = 1.1
    recovery_threshold: int = 5
    jitter_ms: float = 0.0
    throttled_ratio: float = 2.0

    @field_validator("initial_delay_ms")
    @classmethod
    def validate_initial(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"initial_delay_ms must be > 0, got {v}.")
        return v

    @field_validator("backoff_factor", "recovery_factor")
    @classmethod
    def validate_factor(cls, v: float) -> float:
        if v <= 1.0:
            raise ValueError(f"Backoff and recovery factors must be > 1.0, got {v}.")
        return v

    @field_validator("recovery_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"recovery_threshold must be >= 1, got {v}.")
        return v

    @field_validator("jitter_ms")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {v}.")
        return v


class RateLimitsConfig(BaseModel):
    """Default policy plus per-target overrides."""

    model_config = ConfigDict(frozen=True)

    default: RateLimitPolicy = RateLimitPolicy()
    targets: dict[str, RateLimitPolicy] = Field(default_factory=dict)

    def policy_for(self, target: str) -> RateLimitPolicy:
        return self.targets.get(target, self.default)


class ProgressConfig(BaseModel):
    """TTL presets (seconds) for progress markers and locks."""

    model_config = ConfigDict(frozen=True)

    run_lock_ttl_seconds: int = 3600
    character_ttl_seconds: int = 3600
    guild_ttl_seconds: int = 3600
    payload_hash_ttl_seconds: int = 86400
    ladder_ttl_seconds: int = 7 * 86400

    @model_validator(mode="after")
    def validate_positive(self) -> "ProgressConfig":
        for name, value in self.model_dump().items():
            if value <= 0:
                raise ValueError(f"progress.{name} must be > 0, got {value}.")
        return self


class WorkersConfig(BaseModel):
    """Per-role consumer pool sizes and progress reporting cadence."""

    model_config = ConfigDict(frozen=True)

    concurrency: dict[str, int] = Field(
        default_factory=lambda: {"characters": 5, "guilds": 2, "ladder": 3, "auctions": 1}
    )
    report_every: int = 100

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: dict[str, int]) -> dict[str, int]:
        for role, size in v.items():
            if size < 1:
                raise ValueError(f"workers.concurrency.{role} must be >= 1, got {size}.")
        return v

    def concurrency_for(self, role: str) -> int:
        return self.concurrency.get(role, 1)


class RealmsConfig(BaseModel):
    """Connected realms swept by the ladder and auctions producers."""

    model_config = ConfigDict(frozen=True)

    connected_realm_ids: list[int] = [3676, 57, 60, 11]


class LadderConfig(BaseModel):
    """Mythic-plus leaderboard sweep settings."""

    model_config = ConfigDict(frozen=True)

    period_lookback: int = 1
    periods: list[int] = []


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/harvester.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration.

    Constructed by ``load_config()`` which merges TOML + .env + environment.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    redis: RedisConfig = RedisConfig()
    broker: BrokerConfig = BrokerConfig()
    store: StoreConfig = StoreConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    rate_limits: RateLimitsConfig = RateLimitsConfig()
    progress: ProgressConfig = ProgressConfig()
    workers: WorkersConfig = WorkersConfig()
    realms: RealmsConfig = RealmsConfig()
    ladder: LadderConfig = LadderConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    load_dotenv(dotenv_path=root / ".env", override=False)

    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    raw = _apply_env_overrides(raw)
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


# env var → (section, key); section None means top level
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "WOW_HARVESTER_DB_PATH": ("database", "db_path"),
    "WOW_HARVESTER_LOG_LEVEL": ("logging", "level"),
    "WOW_HARVESTER_REDIS_URL": ("redis", "url"),
    "WOW_HARVESTER_BROKER_BACKEND": ("broker", "backend"),
    "WOW_HARVESTER_STORE_BACKEND": ("store", "backend"),
    "WOW_HARVESTER_REGION": ("upstream", "region"),
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply WOW_HARVESTER_* env vars to the raw config dict.

    Supported overrides are listed in ``_ENV_OVERRIDES`` plus
    ``WOW_HARVESTER_DEBUG`` → ``raw["debug"]``.
    """
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        if value := os.environ.get(env_name):
            if section is None:
                raw[key] = value
            else:
                raw.setdefault(section, {})[key] = value

    if debug := os.environ.get("WOW_HARVESTER_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    rate_raw = raw.get("rate_limits", {})
    rate_limits = RateLimitsConfig(
        default=RateLimitPolicy(**rate_raw.get("default", {})),
        targets={
            target: RateLimitPolicy(**{**rate_raw.get("default", {}), **overrides})
            for target, overrides in rate_raw.get("targets", {}).items()
        },
    )

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        redis=RedisConfig(**raw.get("redis", {})),
        broker=BrokerConfig(**raw.get("broker", {})),
        store=StoreConfig(**raw.get("store", {})),
        upstream=UpstreamConfig(**raw.get("upstream", {})),
        rate_limits=rate_limits,
        progress=ProgressConfig(**raw.get("progress", {})),
        workers=WorkersConfig(**raw.get("workers", {})),
        realms=RealmsConfig(**raw.get("realms", {})),
        ladder=LadderConfig(**raw.get("ladder", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
