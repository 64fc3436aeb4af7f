"""
ZoneWatch Configuration Module

Central configuration management with environment variable support.

The master config is built once at service startup (usually via
`ZoneWatchConfig.from_env()`) and passed explicitly to the components that
need it.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple
from enum import Enum


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class SourceBackend(Enum):
    """Which incident source implementation to build."""
    MEMORY = "memory"
    REDIS = "redis"
    HTTP = "http"


DEFAULT_HIGH_RISK_TYPES: Tuple[str, ...] = ("Robo", "Asalto", "Violencia", "Emergencia")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class SourceConfig:
    """Incident data source configuration."""
    backend: SourceBackend = SourceBackend.MEMORY
    collection: str = "reports"

    # Redis backend
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "zonewatch"

    # HTTP backend
    http_base_url: str = "http://localhost:8080/api"
    http_api_key: Optional[str] = None
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "SourceConfig":
        """Load configuration from environment variables."""
        backend_str = os.getenv("ZONEWATCH_SOURCE", "memory").lower()
        try:
            backend = SourceBackend(backend_str)
        except ValueError:
            backend = SourceBackend.MEMORY

        return cls(
            backend=backend,
            collection=os.getenv("ZONEWATCH_COLLECTION", "reports"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_key_prefix=os.getenv("ZONEWATCH_REDIS_PREFIX", "zonewatch"),
            http_base_url=os.getenv("ZONEWATCH_HTTP_BASE_URL", "http://localhost:8080/api"),
            http_api_key=os.getenv("ZONEWATCH_HTTP_API_KEY"),
            poll_interval_seconds=float(os.getenv("ZONEWATCH_POLL_INTERVAL_SECONDS", "5.0")),
            timeout_seconds=float(os.getenv("ZONEWATCH_HTTP_TIMEOUT_SECONDS", "5.0")),
        )


@dataclass
class SubscriptionConfig:
    """Live subscription retry policy."""
    max_retries: int = 3
    retry_delay_ms: int = 1000  # multiplied by the attempt number

    @classmethod
    def from_env(cls) -> "SubscriptionConfig":
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("ZONEWATCH_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("ZONEWATCH_RETRY_DELAY_MS", "1000")),
        )


@dataclass
class ClusteringConfig:
    """Zone clustering configuration."""
    radius_meters: float = 1000.0
    min_cluster_size: int = 3

    @classmethod
    def from_env(cls) -> "ClusteringConfig":
        """Load configuration from environment variables."""
        return cls(
            radius_meters=float(os.getenv("ZONEWATCH_CLUSTER_RADIUS_METERS", "1000")),
            min_cluster_size=int(os.getenv("ZONEWATCH_MIN_CLUSTER_SIZE", "3")),
        )


@dataclass
class WeightConfig:
    """Which report attributes raise a heatmap weight."""
    high_risk_types: Tuple[str, ...] = DEFAULT_HIGH_RISK_TYPES
    pending_status: str = "Pendiente"
    urgent_priority: str = "urgent"

    @classmethod
    def from_env(cls) -> "WeightConfig":
        """Load configuration from environment variables."""
        raw_types = os.getenv("ZONEWATCH_HIGH_RISK_TYPES")
        if raw_types:
            high_risk_types = tuple(t.strip() for t in raw_types.split(",") if t.strip())
        else:
            high_risk_types = DEFAULT_HIGH_RISK_TYPES

        return cls(
            high_risk_types=high_risk_types,
            pending_status=os.getenv("ZONEWATCH_PENDING_STATUS", "Pendiente"),
            urgent_priority=os.getenv("ZONEWATCH_URGENT_PRIORITY", "urgent"),
        )


@dataclass
class TrendConfig:
    """Trend series configuration."""
    default_days: int = 30

    @classmethod
    def from_env(cls) -> "TrendConfig":
        """Load configuration from environment variables."""
        return cls(default_days=int(os.getenv("ZONEWATCH_TREND_DAYS", "30")))


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Structured logging
    json_format: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_format=_env_bool("LOG_JSON_FORMAT", "false"),
        )


@dataclass
class ZoneWatchConfig:
    """Master configuration for ZoneWatch."""
    environment: Environment = Environment.DEVELOPMENT

    # Sub-configurations
    source: SourceConfig = field(default_factory=SourceConfig)
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    weights: WeightConfig = field(default_factory=WeightConfig)
    trends: TrendConfig = field(default_factory=TrendConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "ZoneWatchConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            source=SourceConfig.from_env(),
            subscription=SubscriptionConfig.from_env(),
            clustering=ClusteringConfig.from_env(),
            weights=WeightConfig.from_env(),
            trends=TrendConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        if self.subscription.max_retries < 0:
            messages.append("ERROR: max_retries must be >= 0")
            valid = False
        if self.subscription.retry_delay_ms < 0:
            messages.append("ERROR: retry_delay_ms must be >= 0")
            valid = False

        if self.clustering.radius_meters <= 0:
            messages.append("ERROR: cluster radius must be positive")
            valid = False
        if self.clustering.min_cluster_size < 3:
            messages.append("ERROR: min_cluster_size must be at least 3")
            valid = False

        if self.trends.default_days < 1:
            messages.append("ERROR: trend window must be at least one day")
            valid = False

        if not self.weights.high_risk_types:
            messages.append("WARNING: no high-risk incident types configured")

        if self.environment == Environment.PRODUCTION:
            if self.source.backend == SourceBackend.MEMORY:
                messages.append("WARNING: Using in-memory incident source in production")
            if self.source.backend == SourceBackend.REDIS and "localhost" in self.source.redis_url:
                messages.append("WARNING: Using localhost Redis in production")
            if self.source.backend == SourceBackend.HTTP and not self.source.http_api_key:
                messages.append("WARNING: HTTP source configured without an API key")

        return {"valid": valid, "messages": messages}
