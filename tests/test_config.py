"""
Tests for settings validation and the static pricing tables.
"""

import pytest

from tokengate.config import (
    DEFAULT_RETRY_CONFIG,
    TIER_CONFIGS,
    TOKEN_COSTS,
    ConfigurationError,
    Settings,
    get_retry_config,
)
from tokengate.models.api import OperationType, SubscriptionTier


class TestSettingsValidation:
    """FAIL FAST checks."""

    def test_valid_settings(self):
        settings = Settings(database_url="postgresql+asyncpg://u:p@db/tokengate")

        assert settings.redis_url.startswith("redis://")

    def test_missing_database_url(self):
        with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
            Settings(database_url="")

    def test_non_postgres_database_url(self):
        with pytest.raises(ConfigurationError, match="PostgreSQL"):
            Settings(database_url="mysql://u:p@db/tokengate")

    def test_bad_redis_url(self):
        with pytest.raises(ConfigurationError, match="REDIS_URL"):
            Settings(database_url="postgresql://db/t", redis_url="http://cache")

    def test_bad_log_format(self):
        with pytest.raises(ConfigurationError, match="LOG_FORMAT"):
            Settings(database_url="postgresql://db/t", log_format="xml")


class TestStaticTables:
    def test_tier_table(self):
        assert TIER_CONFIGS[SubscriptionTier.GIFT].requests_per_minute == 10
        assert TIER_CONFIGS[SubscriptionTier.GIFT].burst_per_second == 3
        assert TIER_CONFIGS[SubscriptionTier.PROFESSIONAL].requests_per_minute == 50
        assert TIER_CONFIGS[SubscriptionTier.PROFESSIONAL].burst_per_second == 10
        assert TIER_CONFIGS[SubscriptionTier.BUSINESS].requests_per_minute == 100
        assert TIER_CONFIGS[SubscriptionTier.BUSINESS].burst_per_second == 20

    def test_every_operation_has_a_cost(self):
        assert set(TOKEN_COSTS) == set(OperationType)
        assert TOKEN_COSTS[OperationType.PURCHASE] == 0

    def test_retry_configs(self):
        assert get_retry_config("payment-processing").attempts == 5
        assert get_retry_config("sora-generation").timeout_ms == 600_000
        assert get_retry_config("no-such-queue") is DEFAULT_RETRY_CONFIG
