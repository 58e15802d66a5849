"""
Application Configuration - Pydantic Settings for type-safe config.

Static pricing tables (tier allocations, rate limits, operation costs and
queue retry policies) live here as well; they are configuration, not runtime
state.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from dataclasses import dataclass

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tokengate.models.api import OperationType, SubscriptionTier


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Key-value store (rate limiter, cache, job broker)
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50

    # Admission control
    rate_limit_key_prefix: str = "ratelimit"

    # Cache
    cache_key_prefix: str = "cache"
    cache_default_ttl: int = 300

    # Workers
    worker_concurrency: int = 5
    queue_name_prefix: str = "tokengate"

    # Ledger retention (compliance purge)
    ledger_retention_days: int = 365

    # Service identity
    service_name: str = "tokengate"
    service_version: str = "0.1.0"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    # Alerts
    alert_webhook_url: str = ""
    alert_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        Balances and ledger rows must never land in an unexpected database.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.redis_url.startswith(("redis://", "rediss://", "unix://")):
            errors.append(f"REDIS_URL must be a redis URL, got: {self.redis_url[:20]}...")

        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - SERVICE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# ============================================================================
# Static Tables
# ============================================================================


@dataclass(frozen=True)
class TierConfig:
    """Per-tier allocation, price and admission limits."""

    monthly_tokens: int
    price_rubles: int | None
    requests_per_minute: int
    burst_per_second: int


TIER_CONFIGS: dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.GIFT: TierConfig(
        monthly_tokens=100,
        price_rubles=None,
        requests_per_minute=10,
        burst_per_second=3,
    ),
    SubscriptionTier.PROFESSIONAL: TierConfig(
        monthly_tokens=2000,
        price_rubles=1990,
        requests_per_minute=50,
        burst_per_second=10,
    ),
    SubscriptionTier.BUSINESS: TierConfig(
        monthly_tokens=10000,
        price_rubles=3490,
        requests_per_minute=100,
        burst_per_second=20,
    ),
}

TOKEN_COSTS: dict[OperationType, int] = {
    OperationType.IMAGE_GENERATION: 10,
    OperationType.SORA_IMAGE: 10,
    OperationType.PRODUCT_CARD: 10,
    OperationType.CHATGPT_MESSAGE: 5,
    OperationType.REFUND: 0,
    OperationType.PURCHASE: 0,
    OperationType.MONTHLY_RESET: 0,
}

RENEWAL_PERIOD_DAYS: dict[SubscriptionTier, int] = {
    SubscriptionTier.GIFT: 30,
    SubscriptionTier.PROFESSIONAL: 30,
    SubscriptionTier.BUSINESS: 30,
}

SUBSCRIPTION_DURATION_DAYS = 30


@dataclass(frozen=True)
class RetryConfig:
    """Queue retry policy: total attempts, base backoff and time limit."""

    attempts: int
    backoff_ms: int
    timeout_ms: int = 300_000


DEFAULT_RETRY_CONFIG = RetryConfig(attempts=3, backoff_ms=1000)

QUEUE_RETRY_CONFIGS: dict[str, RetryConfig] = {
    "image-generation": RetryConfig(attempts=3, backoff_ms=2000, timeout_ms=120_000),
    "image-processing": RetryConfig(attempts=3, backoff_ms=1000, timeout_ms=60_000),
    "chat-processing": RetryConfig(attempts=2, backoff_ms=1000, timeout_ms=60_000),
    "payment-processing": RetryConfig(attempts=5, backoff_ms=3000, timeout_ms=30_000),
    "subscription-renewal": RetryConfig(attempts=5, backoff_ms=5000),
    "sora-generation": RetryConfig(attempts=3, backoff_ms=5000, timeout_ms=600_000),
    "product-card-generation": RetryConfig(attempts=3, backoff_ms=5000, timeout_ms=300_000),
}


def get_retry_config(queue_name: str) -> RetryConfig:
    """Get retry configuration for a queue (default when unknown)."""
    return QUEUE_RETRY_CONFIGS.get(queue_name, DEFAULT_RETRY_CONFIG)


# Global settings instance - validates at import time
settings = Settings()
