"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field

import structlog


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _get_list_env(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        LOG_LEVEL: Logging level.
        WEBHOOK_STORE_BACKEND: Tenant document store ("memory" or "sqlite").
        WEBHOOK_DB_PATH: SQLite database path for the sqlite backend.
        WEBHOOK_SIGNATURE_HEADER: Header carrying the payload signature.
        WEBHOOK_USER_AGENT: User-Agent sent with every delivery.
        WEBHOOK_MAX_RESPONSE_BYTES: Response body characters kept per attempt.
        WEBHOOK_LOG_RETENTION: Delivery log entries kept per endpoint.
        WEBHOOK_REJECT_DUPLICATES: Reject endpoints repeating an existing (url, events) pair.
        WEBHOOK_MAX_CONCURRENT_DELIVERIES: Concurrent deliveries during fan-out.
        WEBHOOK_RETRY_BACKOFF_SECONDS: Exponential backoff multiplier between retries.
        WEBHOOK_RETRY_BACKOFF_MAX_SECONDS: Cap on a single backoff wait.
        TRUST_TENANT_HEADER: Accept X-Tenant-ID when no principal was resolved (development only).
        CORS_ORIGINS: Allowed CORS origins.
    """

    # Logging
    LOG_LEVEL: str = "INFO"

    # Storage
    WEBHOOK_STORE_BACKEND: str = "memory"
    WEBHOOK_DB_PATH: str = "data/webhooks.db"

    # Delivery
    WEBHOOK_SIGNATURE_HEADER: str = "X-Yoraa-Signature"
    WEBHOOK_USER_AGENT: str = "Yoraa-Webhook/1.0"
    WEBHOOK_MAX_RESPONSE_BYTES: int = 1000
    WEBHOOK_MAX_CONCURRENT_DELIVERIES: int = 10
    WEBHOOK_RETRY_BACKOFF_SECONDS: float = 1.0
    WEBHOOK_RETRY_BACKOFF_MAX_SECONDS: float = 30.0

    # Registry
    WEBHOOK_LOG_RETENTION: int = 100
    WEBHOOK_REJECT_DUPLICATES: bool = False

    # API
    TRUST_TENANT_HEADER: bool = False
    CORS_ORIGINS: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            WEBHOOK_STORE_BACKEND=os.getenv("WEBHOOK_STORE_BACKEND", "memory"),
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH", "data/webhooks.db"),
            WEBHOOK_SIGNATURE_HEADER=os.getenv(
                "WEBHOOK_SIGNATURE_HEADER", "X-Yoraa-Signature"
            ),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "Yoraa-Webhook/1.0"),
            WEBHOOK_MAX_RESPONSE_BYTES=_get_int_env("WEBHOOK_MAX_RESPONSE_BYTES", 1000),
            WEBHOOK_MAX_CONCURRENT_DELIVERIES=_get_int_env(
                "WEBHOOK_MAX_CONCURRENT_DELIVERIES", 10
            ),
            WEBHOOK_RETRY_BACKOFF_SECONDS=_get_float_env(
                "WEBHOOK_RETRY_BACKOFF_SECONDS", 1.0
            ),
            WEBHOOK_RETRY_BACKOFF_MAX_SECONDS=_get_float_env(
                "WEBHOOK_RETRY_BACKOFF_MAX_SECONDS", 30.0
            ),
            WEBHOOK_LOG_RETENTION=_get_int_env("WEBHOOK_LOG_RETENTION", 100),
            WEBHOOK_REJECT_DUPLICATES=_get_bool_env("WEBHOOK_REJECT_DUPLICATES"),
            TRUST_TENANT_HEADER=_get_bool_env("TRUST_TENANT_HEADER"),
            CORS_ORIGINS=_get_list_env("CORS_ORIGINS", ["*"]),
        )


def configure_logging(level: str | None = None) -> None:
    """Configure structlog with a level filter.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL).
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = logging.getLevelNamesMapping().get(level_name, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )


# Global settings instance
settings = Settings.from_env()
