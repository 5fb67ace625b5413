"""Configuration management with validation.

Daemon-wide settings are read once from the environment at startup and
validated immediately. Per-target admin credentials live in
``autopg.credentials`` and are snapshotted separately.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .convergence import RetryPolicy
from .credentials import ENV_PREFIX


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_LABEL_PREFIX = "autopg."

# Configuration constants with documented bounds
DEFAULT_CONNECT_ATTEMPTS = 30
MAX_CONNECT_ATTEMPTS = 600

DEFAULT_CONNECT_INTERVAL_SECONDS = 1.0
MAX_CONNECT_INTERVAL_SECONDS = 60.0

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5
MAX_CONNECT_TIMEOUT_SECONDS = 120

DEFAULT_RECONNECT_BACKOFF_SECONDS = 2.0
MAX_RECONNECT_BACKOFF_SECONDS = 300.0

DEFAULT_SSLMODE = "disable"
VALID_SSLMODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")

DEFAULT_ADMIN_DATABASE = "postgres"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Daemon configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    label_prefix: str = DEFAULT_LABEL_PREFIX

    # Admin connection behavior
    connect_attempts: int = DEFAULT_CONNECT_ATTEMPTS
    connect_interval_seconds: float = DEFAULT_CONNECT_INTERVAL_SECONDS
    connect_timeout_seconds: int = DEFAULT_CONNECT_TIMEOUT_SECONDS
    sslmode: str = DEFAULT_SSLMODE
    admin_database: str = DEFAULT_ADMIN_DATABASE

    # Event stream
    reconnect_backoff_seconds: float = DEFAULT_RECONNECT_BACKOFF_SECONDS

    # Behavior
    dry_run: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.label_prefix:
            errors.append(f"{ENV_PREFIX}_LABEL_PREFIX must not be empty")
        elif not self.label_prefix.endswith("."):
            errors.append(f"{ENV_PREFIX}_LABEL_PREFIX must end with '.': {self.label_prefix}")

        if not (1 <= self.connect_attempts <= MAX_CONNECT_ATTEMPTS):
            errors.append(
                f"{ENV_PREFIX}_CONNECT_ATTEMPTS must be between 1 and {MAX_CONNECT_ATTEMPTS}"
            )

        if not (0 <= self.connect_interval_seconds <= MAX_CONNECT_INTERVAL_SECONDS):
            errors.append(
                f"{ENV_PREFIX}_CONNECT_INTERVAL must be between 0 and "
                f"{MAX_CONNECT_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.connect_timeout_seconds <= MAX_CONNECT_TIMEOUT_SECONDS):
            errors.append(
                f"{ENV_PREFIX}_CONNECT_TIMEOUT must be between 1 and "
                f"{MAX_CONNECT_TIMEOUT_SECONDS} seconds"
            )

        if not (0 <= self.reconnect_backoff_seconds <= MAX_RECONNECT_BACKOFF_SECONDS):
            errors.append(
                f"{ENV_PREFIX}_RECONNECT_BACKOFF must be between 0 and "
                f"{MAX_RECONNECT_BACKOFF_SECONDS} seconds"
            )

        if self.sslmode not in VALID_SSLMODES:
            errors.append(f"{ENV_PREFIX}_SSLMODE must be one of {list(VALID_SSLMODES)}")

        if not self.admin_database:
            errors.append(f"{ENV_PREFIX}_ADMIN_DATABASE must not be empty")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"{ENV_PREFIX}_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def retry_policy(self) -> RetryPolicy:
        """Bounded retry policy for establishing admin connections."""
        return RetryPolicy(
            max_attempts=self.connect_attempts,
            interval_seconds=self.connect_interval_seconds,
        )

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AUTOPG_LABEL_PREFIX: Container label prefix (default: autopg.)
            AUTOPG_CONNECT_ATTEMPTS: Admin connection attempts (default: 30)
            AUTOPG_CONNECT_INTERVAL: Seconds between attempts (default: 1.0)
            AUTOPG_CONNECT_TIMEOUT: Per-attempt connect timeout (default: 5)
            AUTOPG_RECONNECT_BACKOFF: Event stream reconnect delay (default: 2.0)
            AUTOPG_SSLMODE: libpq sslmode for admin connections (default: disable)
            AUTOPG_ADMIN_DATABASE: Database for the admin session (default: postgres)
            AUTOPG_DRY_RUN: If "true", log plans without touching PostgreSQL
            AUTOPG_LOG_LEVEL: Root log level (default: INFO)

        Per-target credentials (AUTOPG_<TARGET>_HOST etc.) are read by
        CredentialResolver.from_env(), not here.
        """

        def key(name: str) -> str:
            return f"{ENV_PREFIX}_{name}"

        def get_int(name: str, default: int) -> int:
            value = os.environ.get(key(name))
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key(name)} must be an integer: {value}") from e

        def get_float(name: str, default: float) -> float:
            value = os.environ.get(key(name))
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key(name)} must be a number: {value}") from e

        def get_bool(name: str, default: bool) -> bool:
            value = os.environ.get(key(name), "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            label_prefix=os.environ.get(key("LABEL_PREFIX"), DEFAULT_LABEL_PREFIX),
            connect_attempts=get_int("CONNECT_ATTEMPTS", DEFAULT_CONNECT_ATTEMPTS),
            connect_interval_seconds=get_float(
                "CONNECT_INTERVAL", DEFAULT_CONNECT_INTERVAL_SECONDS
            ),
            connect_timeout_seconds=get_int("CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_SECONDS),
            sslmode=os.environ.get(key("SSLMODE"), DEFAULT_SSLMODE),
            admin_database=os.environ.get(key("ADMIN_DATABASE"), DEFAULT_ADMIN_DATABASE),
            reconnect_backoff_seconds=get_float(
                "RECONNECT_BACKOFF", DEFAULT_RECONNECT_BACKOFF_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            log_level=os.environ.get(key("LOG_LEVEL"), "INFO").upper(),
        )
