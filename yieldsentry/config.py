import os
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# Load environment variables from .env file
load_dotenv()

AGGREGATION_METHODS = ("primary_fallback", "fastest", "consensus")
DEFAULT_AGGREGATION_METHOD = "primary_fallback"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """
    YieldSentry Configuration
    All settings are loaded from environment variables so deployments can
    tune the engine without code changes.
    """

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    DEBUG = ENVIRONMENT == "development"

    # Cache store (SQLite file by default)
    CACHE_DB_URL = os.getenv("CACHE_DB_URL", "sqlite:///./data/yieldsentry_cache.db")
    CACHE_DEFAULT_TTL_SEC = float(os.getenv("CACHE_DEFAULT_TTL_SEC", "300"))
    CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "10000"))
    CACHE_CLEANUP_INTERVAL_SEC = float(os.getenv("CACHE_CLEANUP_INTERVAL_SEC", "600"))

    # Upstream API keys
    BITQUERY_API_KEY = os.getenv("BITQUERY_API_KEY", "")
    DAPPRADAR_API_KEY = os.getenv("DAPPRADAR_API_KEY", "")

    # DefiLlama adapter
    DEFILLAMA_PROTOCOLS = _env_list("DEFILLAMA_PROTOCOLS", "alex,arkadiko,bitflow")
    DEFILLAMA_CHAIN = os.getenv("DEFILLAMA_CHAIN", "stacks")

    # Background sync
    SYNC_ENABLED = _env_bool("SYNC_ENABLED", "true")
    SYNC_INTERVAL_SEC = float(os.getenv("SYNC_INTERVAL_SEC", "1800"))  # 30 minutes
    SYNC_RETRY_ATTEMPTS = int(os.getenv("SYNC_RETRY_ATTEMPTS", "3"))
    SYNC_RETRY_DELAY_SEC = float(os.getenv("SYNC_RETRY_DELAY_SEC", "300"))  # 5 minutes
    SYNC_PROTOCOLS = _env_list("SYNC_PROTOCOLS", "folks-finance,tinyman,pact")
    SYNC_CHAIN = os.getenv("SYNC_CHAIN", "algorand")
    SYNC_AGGREGATED_METRICS = _env_bool("SYNC_AGGREGATED_METRICS", "true")

    # Reliability
    RELIABILITY_METHOD = os.getenv("RELIABILITY_METHOD", DEFAULT_AGGREGATION_METHOD)
    RELIABILITY_MAX_RETRIES = int(os.getenv("RELIABILITY_MAX_RETRIES", "3"))
    RELIABILITY_RETRY_DELAY_SEC = float(os.getenv("RELIABILITY_RETRY_DELAY_SEC", "1"))
    RELIABILITY_TIMEOUT_SEC = float(os.getenv("RELIABILITY_TIMEOUT_SEC", "10"))
    CIRCUIT_BREAKER_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5"))
    CIRCUIT_BREAKER_TIMEOUT_SEC = float(os.getenv("CIRCUIT_BREAKER_TIMEOUT_SEC", "30"))

    # Risk monitoring
    RISK_CHECK_INTERVAL_SEC = float(os.getenv("RISK_CHECK_INTERVAL_SEC", "30"))
    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")

    # CORS - Allowed origins for the dashboard
    ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

    @classmethod
    def validate(cls):
        """Validate critical configuration on startup."""
        import logging
        logger = logging.getLogger(__name__)

        warnings = []

        if not cls.BITQUERY_API_KEY:
            warnings.append("BITQUERY_API_KEY not set (volume sync disabled)")
        if not cls.DAPPRADAR_API_KEY:
            warnings.append("DAPPRADAR_API_KEY not set (user metrics sync disabled)")
        if cls.RELIABILITY_METHOD not in AGGREGATION_METHODS:
            warnings.append(
                f"Unknown RELIABILITY_METHOD={cls.RELIABILITY_METHOD}, using {DEFAULT_AGGREGATION_METHOD}"
            )

        for w in warnings:
            logger.warning(f"⚠️  {w}")

        if cls.ENVIRONMENT == "production":
            logger.info("🚀 Running in PRODUCTION mode")
        else:
            logger.info("🔧 Running in DEVELOPMENT mode")

        return len(warnings) == 0

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT == "production"


config = Config()


class CacheSettings(BaseModel):
    default_ttl_sec: float = 300.0
    max_entries: int = Field(default=10000, ge=1)
    cleanup_interval_sec: float = 600.0
    db_url: str = "sqlite:///./data/yieldsentry_cache.db"


class SyncSettings(BaseModel):
    enabled: bool = True
    interval_sec: float = 1800.0
    initial_delay_sec: float = 5.0
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_sec: float = 300.0
    protocols: List[str] = Field(default_factory=lambda: ["folks-finance", "tinyman", "pact"])
    enable_aggregated_metrics: bool = True
    chain: str = "algorand"


class CircuitBreakerSettings(BaseModel):
    threshold: int = Field(default=5, ge=1)
    timeout_sec: float = 30.0


class ReliabilitySettings(BaseModel):
    max_retries: int = Field(default=3, ge=1)
    retry_delay_sec: float = 1.0
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    aggregation_method: Literal["primary_fallback", "fastest", "consensus"] = "primary_fallback"
    min_sources: int = Field(default=1, ge=1)
    max_sources: int = Field(default=3, ge=1)
    timeout_sec: float = 10.0
    health_check_interval_sec: float = 30.0
    health_check_timeout_sec: float = 3.0


class RiskThreshold(BaseModel):
    """Per-metric alert levels. Frozen: thresholds are not hot-reloaded."""
    model_config = ConfigDict(frozen=True)

    metric: str
    warning_level: float
    critical_level: float
    lookback_period: int = 1  # days
    enabled: bool = True
    notification_channels: List[Literal["email", "webhook", "in_app"]] = Field(
        default_factory=lambda: ["in_app"]
    )


def default_thresholds() -> List[RiskThreshold]:
    return [
        RiskThreshold(metric="overall_risk", warning_level=50, critical_level=75,
                      lookback_period=1, notification_channels=["in_app", "webhook"]),
        RiskThreshold(metric="response_time", warning_level=1000, critical_level=3000,
                      lookback_period=1, notification_channels=["in_app"]),
        RiskThreshold(metric="error_rate", warning_level=0.05, critical_level=0.1,
                      lookback_period=1, notification_channels=["in_app", "webhook"]),
        # Share of unhealthy adapters, 0..1
        RiskThreshold(metric="adapter_health", warning_level=0.34, critical_level=0.67,
                      lookback_period=1, notification_channels=["in_app"]),
    ]


class RiskSettings(BaseModel):
    thresholds: List[RiskThreshold] = Field(default_factory=default_thresholds)
    check_interval_sec: float = 30.0
    alert_retention_sec: float = 7 * 24 * 3600.0
    webhook_url: Optional[str] = None


class EngineSettings(BaseModel):
    cache: CacheSettings = Field(default_factory=CacheSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    reliability: ReliabilitySettings = Field(default_factory=ReliabilitySettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    defillama_protocols: List[str] = Field(default_factory=lambda: ["alex", "arkadiko", "bitflow"])
    defillama_chain: str = "stacks"
    bitquery_api_key: str = ""
    dappradar_api_key: str = ""


def _aggregation_method(value: str) -> str:
    # validate() has already warned about unknown values
    return value if value in AGGREGATION_METHODS else DEFAULT_AGGREGATION_METHOD


def build_settings(cfg: Config = config) -> EngineSettings:
    """Translate the environment-backed Config into typed engine settings."""
    return EngineSettings(
        cache=CacheSettings(
            default_ttl_sec=cfg.CACHE_DEFAULT_TTL_SEC,
            max_entries=cfg.CACHE_MAX_ENTRIES,
            cleanup_interval_sec=cfg.CACHE_CLEANUP_INTERVAL_SEC,
            db_url=cfg.CACHE_DB_URL,
        ),
        sync=SyncSettings(
            enabled=cfg.SYNC_ENABLED,
            interval_sec=cfg.SYNC_INTERVAL_SEC,
            retry_attempts=cfg.SYNC_RETRY_ATTEMPTS,
            retry_delay_sec=cfg.SYNC_RETRY_DELAY_SEC,
            protocols=list(cfg.SYNC_PROTOCOLS),
            enable_aggregated_metrics=cfg.SYNC_AGGREGATED_METRICS,
            chain=cfg.SYNC_CHAIN,
        ),
        reliability=ReliabilitySettings(
            max_retries=cfg.RELIABILITY_MAX_RETRIES,
            retry_delay_sec=cfg.RELIABILITY_RETRY_DELAY_SEC,
            circuit_breaker=CircuitBreakerSettings(
                threshold=cfg.CIRCUIT_BREAKER_THRESHOLD,
                timeout_sec=cfg.CIRCUIT_BREAKER_TIMEOUT_SEC,
            ),
            aggregation_method=_aggregation_method(cfg.RELIABILITY_METHOD),
            timeout_sec=cfg.RELIABILITY_TIMEOUT_SEC,
        ),
        risk=RiskSettings(
            check_interval_sec=cfg.RISK_CHECK_INTERVAL_SEC,
            webhook_url=cfg.ALERT_WEBHOOK_URL or None,
        ),
        defillama_protocols=list(cfg.DEFILLAMA_PROTOCOLS),
        defillama_chain=cfg.DEFILLAMA_CHAIN,
        bitquery_api_key=cfg.BITQUERY_API_KEY,
        dappradar_api_key=cfg.DAPPRADAR_API_KEY,
    )
