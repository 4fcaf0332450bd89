"""
Configuration management for the time-credit ledger.

Handles loading configuration from environment variables and validation.
Fee and limit parameters are immutable once loaded; changing them never
affects entries that were already settled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from typing import Any

from timeledger.core.exceptions import ConfigurationError

ENV_PREFIX = "TIMELEDGER_"


def _get_env_var(name: str, default: str | None = None) -> str | None:
    """Get environment variable with optional default."""
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _parse_decimal(name: str, value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(f"{name} must be a decimal number, got {value!r}") from e


def _parse_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _parse_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


@dataclass(frozen=True)
class Config:
    """Ledger configuration."""

    # Fee policy
    fee_percent: Decimal = Decimal("0.02")
    min_transfer: Decimal = Decimal("0.01")
    max_transfer: Decimal = Decimal("1000")
    decimal_places: int = 2

    # Accounts
    starting_balance: Decimal = Decimal("10")
    platform_account_id: str = "platform"

    # Storage
    storage_backend: str = "memory"
    redis_url: str | None = None
    storage_timeout: float | None = None  # seconds; None waits on storage indefinitely

    # Account locks
    lock_ttl: int = 30
    lock_retry_count: int = 20
    lock_retry_delay: float = 0.05

    # Retries for idempotent settlements
    retry_attempts: int = 3

    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        for name in ("fee_percent", "min_transfer", "max_transfer", "starting_balance"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, _parse_decimal(name, value))

        if not Decimal("0") <= self.fee_percent < Decimal("1"):
            raise ConfigurationError(f"fee_percent must be in [0, 1), got {self.fee_percent}")
        if self.min_transfer <= 0:
            raise ConfigurationError(f"min_transfer must be positive, got {self.min_transfer}")
        if self.max_transfer <= self.min_transfer:
            raise ConfigurationError(
                f"max_transfer ({self.max_transfer}) must exceed min_transfer ({self.min_transfer})"
            )
        if self.decimal_places < 0:
            raise ConfigurationError(f"decimal_places must be >= 0, got {self.decimal_places}")
        if not self.platform_account_id:
            raise ConfigurationError("platform_account_id is required")
        if self.lock_ttl <= 0 or self.lock_retry_count < 0 or self.lock_retry_delay < 0:
            raise ConfigurationError("lock settings must be positive")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if self.storage_timeout is not None and self.storage_timeout <= 0:
            raise ConfigurationError("storage_timeout must be positive when set")

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from TIMELEDGER_* environment variables."""
        values: dict[str, Any] = {}

        decimals = {
            "fee_percent": "FEE_PERCENT",
            "min_transfer": "MIN_TRANSFER",
            "max_transfer": "MAX_TRANSFER",
            "starting_balance": "STARTING_BALANCE",
        }
        for field_name, env_name in decimals.items():
            raw = _get_env_var(env_name)
            if raw is not None:
                values[field_name] = _parse_decimal(field_name, raw)

        ints = {
            "decimal_places": "DECIMAL_PLACES",
            "lock_ttl": "LOCK_TTL",
            "lock_retry_count": "LOCK_RETRY_COUNT",
            "retry_attempts": "RETRY_ATTEMPTS",
        }
        for field_name, env_name in ints.items():
            raw = _get_env_var(env_name)
            if raw is not None:
                values[field_name] = _parse_int(field_name, raw)

        floats = {
            "lock_retry_delay": "LOCK_RETRY_DELAY",
            "storage_timeout": "STORAGE_TIMEOUT",
        }
        for field_name, env_name in floats.items():
            raw = _get_env_var(env_name)
            if raw is not None:
                values[field_name] = _parse_float(field_name, raw)

        platform = _get_env_var("PLATFORM_ACCOUNT")
        if platform:
            values["platform_account_id"] = platform

        values["storage_backend"] = _get_env_var("STORAGE_BACKEND", default="memory")
        values["redis_url"] = _get_env_var("REDIS_URL")
        values["log_level"] = _get_env_var("LOG_LEVEL", default="INFO")
        values["log_json"] = (_get_env_var("LOG_JSON") or "").lower() in ("1", "true", "yes")

        values.update(overrides)
        return cls(**values)

    def with_updates(self, **updates: Any) -> Config:
        """Create a new Config with updated values."""
        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update(updates)
        return Config(**current)

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01') for two places."""
        return Decimal(1).scaleb(-self.decimal_places)
