"""
ZoneWatch Configuration & Logging Tests
"""

import json
import logging

import pytest

from zonewatch.config import (
    DEFAULT_HIGH_RISK_TYPES,
    Environment,
    LoggingConfig,
    SourceBackend,
    SourceConfig,
    SubscriptionConfig,
    ZoneWatchConfig,
)
from zonewatch.logging_config import JSONFormatter, setup_logging


# =============================================================================
# CONFIGURATION
# =============================================================================

class TestZoneWatchConfig:

    def test_defaults(self):
        config = ZoneWatchConfig()

        assert config.source.backend == SourceBackend.MEMORY
        assert config.source.collection == "reports"
        assert config.subscription.max_retries == 3
        assert config.subscription.retry_delay_ms == 1000
        assert config.clustering.radius_meters == 1000.0
        assert config.clustering.min_cluster_size == 3
        assert config.weights.high_risk_types == DEFAULT_HIGH_RISK_TYPES
        assert config.trends.default_days == 30
        assert config.validate()["valid"]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "staging")
        monkeypatch.setenv("ZONEWATCH_SOURCE", "redis")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        monkeypatch.setenv("ZONEWATCH_MAX_RETRIES", "5")
        monkeypatch.setenv("ZONEWATCH_RETRY_DELAY_MS", "250")
        monkeypatch.setenv("ZONEWATCH_CLUSTER_RADIUS_METERS", "750")
        monkeypatch.setenv("ZONEWATCH_HIGH_RISK_TYPES", "Robo, Incendio ,")
        monkeypatch.setenv("ZONEWATCH_TREND_DAYS", "7")
        monkeypatch.setenv("LOG_JSON_FORMAT", "true")

        config = ZoneWatchConfig.from_env()

        assert config.environment == Environment.STAGING
        assert config.source.backend == SourceBackend.REDIS
        assert config.source.redis_url == "redis://cache:6379/2"
        assert config.subscription == SubscriptionConfig(max_retries=5, retry_delay_ms=250)
        assert config.clustering.radius_meters == 750.0
        assert config.weights.high_risk_types == ("Robo", "Incendio")
        assert config.trends.default_days == 7
        assert config.logging.json_format is True

    def test_unknown_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "moon")
        monkeypatch.setenv("ZONEWATCH_SOURCE", "carrier-pigeon")

        config = ZoneWatchConfig.from_env()

        assert config.environment == Environment.DEVELOPMENT
        assert config.source.backend == SourceBackend.MEMORY

    def test_validate_reports_errors(self):
        config = ZoneWatchConfig(
            subscription=SubscriptionConfig(max_retries=-1),
        )
        config.clustering.min_cluster_size = 2
        config.trends.default_days = 0

        result = config.validate()

        assert not result["valid"]
        assert len([m for m in result["messages"] if m.startswith("ERROR")]) == 3

    def test_production_warnings(self):
        config = ZoneWatchConfig(
            environment=Environment.PRODUCTION,
            source=SourceConfig(backend=SourceBackend.HTTP),
        )

        result = config.validate()

        assert result["valid"]
        assert any("API key" in m for m in result["messages"])


# =============================================================================
# LOGGING
# =============================================================================

class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        before, level = list(root.handlers), root.level
        yield
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
        logging.getLogger("httpx").setLevel(logging.NOTSET)
        logging.getLogger("httpcore").setLevel(logging.NOTSET)

    def test_json_format(self):
        setup_logging(LoggingConfig(level="DEBUG", json_format=True))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_plain_format(self):
        setup_logging(LoggingConfig())

        assert not isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord(
            "zonewatch.feeds.subscription", logging.WARNING, __file__, 10,
            "Subscription %s retrying", (4,), None,
        )
        record.subscription_id = 4
        record.attempt = 2
        record.error_code = "unavailable"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Subscription 4 retrying"
        assert entry["level"] == "WARNING"
        assert entry["subscription_id"] == 4
        assert entry["attempt"] == 2
        assert entry["error_code"] == "unavailable"
        assert "zone_count" not in entry
