"""
Configuration management for RelayPay.

Handles loading configuration from environment variables and validation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any

from relaypay.core.exceptions import ConfigurationError
from relaypay.core.types import Chain

DEFAULT_CHAIN_PRIORITY: tuple[Chain, ...] = (
    Chain.BASE,
    Chain.POLYGON,
    Chain.ARBITRUM,
    Chain.OPTIMISM,
    Chain.ETHEREUM,
    Chain.AVALANCHE,
    Chain.BSC,
)


def _get_env_var(name: str, default: str | None = None, required: bool = False) -> str | None:
    """Get environment variable with optional default."""
    value = os.environ.get(name, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {name} is not set")
    return value


def _env_number(name: str, cast: type, default: Any) -> Any:
    raw = _get_env_var(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(
            f"Environment variable {name} is not a valid {cast.__name__}: {raw!r}"
        ) from None


def _parse_chains(value: str | tuple | list) -> tuple[Chain, ...]:
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    return tuple(Chain.from_string(c) for c in value)


def _parse_ints(value: str | tuple | list) -> tuple[int, ...]:
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    return tuple(sorted(int(v) for v in value))


# Environment variable and caster for every numeric setting
_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "scheduler_interval": ("RELAYPAY_SCHEDULER_INTERVAL", float),
    "scan_batch_size": ("RELAYPAY_SCAN_BATCH_SIZE", int),
    "worker_concurrency": ("RELAYPAY_WORKER_CONCURRENCY", int),
    "max_attempts": ("RELAYPAY_MAX_ATTEMPTS", int),
    "backoff_base": ("RELAYPAY_BACKOFF_BASE", float),
    "stale_job_timeout": ("RELAYPAY_STALE_JOB_TIMEOUT", float),
    "idle_poll_interval": ("RELAYPAY_IDLE_POLL_INTERVAL", float),
    "bridge_timeout": ("RELAYPAY_BRIDGE_TIMEOUT", float),
    "bridge_poll_interval": ("RELAYPAY_BRIDGE_POLL_INTERVAL", float),
    "confirmation_poll_interval": ("RELAYPAY_CONFIRMATION_POLL_INTERVAL", float),
    "confirmation_timeout": ("RELAYPAY_CONFIRMATION_TIMEOUT", float),
    "required_confirmations": ("RELAYPAY_REQUIRED_CONFIRMATIONS", int),
    "completed_job_retention": ("RELAYPAY_COMPLETED_JOB_RETENTION", float),
    "failed_job_retention": ("RELAYPAY_FAILED_JOB_RETENTION", float),
}


@dataclass(frozen=True)
class Config:
    """Engine configuration."""

    storage_backend: str = "memory"
    redis_url: str | None = None
    log_level: str = "INFO"
    log_json: bool = False

    # Routing
    home_chain: Chain = Chain.BASE
    chain_priority: tuple[Chain, ...] = DEFAULT_CHAIN_PRIORITY

    # Scheduler (the scan runs every minute and claims up to 50 rows)
    scheduler_interval: float = 60.0
    scan_batch_size: int = 50

    # Queue & workers
    worker_concurrency: int = 3
    max_attempts: int = 3
    backoff_base: float = 2.0  # seconds; doubles per attempt
    stale_job_timeout: float = 300.0  # ACTIVE lease older than this is requeued
    idle_poll_interval: float = 1.0

    # Bridge (5s polls for up to 5 minutes)
    bridge_timeout: float = 300.0
    bridge_poll_interval: float = 5.0

    # Confirmations
    confirmation_poll_interval: float = 12.0
    confirmation_timeout: float = 600.0
    required_confirmations: int = 12
    confirmation_milestones: tuple[int, ...] = (1, 3, 12)

    # Retention for finished jobs
    completed_job_retention: float = 3600.0
    failed_job_retention: float = 86400.0

    # Notifications
    notify_webhook_url: str | None = None
    notify_signing_key: str | None = None  # base64 or PEM Ed25519 private key

    def __post_init__(self) -> None:
        if self.worker_concurrency < 1:
            raise ConfigurationError("worker_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.scan_batch_size < 1:
            raise ConfigurationError("scan_batch_size must be at least 1")
        if self.required_confirmations < 1:
            raise ConfigurationError("required_confirmations must be at least 1")
        if not self.chain_priority:
            raise ConfigurationError("chain_priority must name at least one chain")
        for name in (
            "scheduler_interval",
            "backoff_base",
            "stale_job_timeout",
            "idle_poll_interval",
            "bridge_timeout",
            "bridge_poll_interval",
            "confirmation_poll_interval",
            "confirmation_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables."""
        values: dict[str, Any] = {
            "storage_backend": _get_env_var("RELAYPAY_STORAGE_BACKEND", default="memory"),
            "redis_url": _get_env_var("RELAYPAY_REDIS_URL"),
            "log_level": _get_env_var("RELAYPAY_LOG_LEVEL", default="INFO"),
            "log_json": (_get_env_var("RELAYPAY_LOG_JSON", default="") or "").lower()
            in ("1", "true", "yes"),
            "notify_webhook_url": _get_env_var("RELAYPAY_NOTIFY_WEBHOOK_URL"),
            "notify_signing_key": _get_env_var("RELAYPAY_NOTIFY_SIGNING_KEY"),
        }

        home_chain = _get_env_var("RELAYPAY_HOME_CHAIN")
        if home_chain:
            values["home_chain"] = Chain.from_string(home_chain)

        chain_priority = _get_env_var("RELAYPAY_CHAIN_PRIORITY")
        if chain_priority:
            values["chain_priority"] = _parse_chains(chain_priority)

        milestones = _get_env_var("RELAYPAY_CONFIRMATION_MILESTONES")
        if milestones:
            values["confirmation_milestones"] = _parse_ints(milestones)

        for field_name, (env_name, cast) in _ENV_FIELDS.items():
            values[field_name] = _env_number(env_name, cast, getattr(cls, field_name))

        values.update(overrides)
        return cls._build(values)

    def with_updates(self, **updates: Any) -> Config:
        """Create a new Config with updated values."""
        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update(updates)
        return Config._build(current)

    @classmethod
    def _build(cls, values: dict[str, Any]) -> Config:
        if isinstance(values.get("home_chain"), str):
            values["home_chain"] = Chain.from_string(values["home_chain"])
        if "chain_priority" in values:
            values["chain_priority"] = _parse_chains(values["chain_priority"])
        if "confirmation_milestones" in values:
            values["confirmation_milestones"] = _parse_ints(values["confirmation_milestones"])
        return cls(**values)
