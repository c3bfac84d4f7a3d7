from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RiskBucket = Literal["low", "med", "high"]
RiskCategory = Literal["low", "medium", "high", "critical"]
HealthStatus = Literal["healthy", "degraded", "down"]


class Opportunity(BaseModel):
    """
    A yield-bearing position reported by one source.
    Frozen: refreshes replace the whole record.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    chain: str
    protocol: str
    pool: str
    tokens: List[str] = Field(default_factory=list)
    apr: float = 0.0
    apy: float = 0.0
    apy_base: Optional[float] = None
    apy_reward: Optional[float] = None
    reward_tokens: List[str] = Field(default_factory=list)
    tvl_usd: float = Field(default=0.0, ge=0)
    risk: RiskBucket = "med"
    source: Literal["api", "mock"] = "api"
    last_updated: float = 0.0
    disabled: bool = False

    # Extended metadata
    pool_id: Optional[str] = None
    underlying_tokens: Optional[List[str]] = None
    logo_url: Optional[str] = None
    exposure: Optional[str] = None
    il_risk: Optional[str] = None
    stablecoin: Optional[bool] = None

    def dedup_key(self) -> str:
        return f"{self.protocol.lower()}-{self.pool.lower()}"


class ProtocolInfo(BaseModel):
    name: str
    chain: str
    base_url: str
    rate_limit: int = 60  # requests per minute
    timeout_sec: float = 10.0
    retry_attempts: int = 3
    description: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None
    supported_tokens: List[str] = Field(default_factory=list)


class ChartPoint(BaseModel):
    timestamp: str
    tvl_usd: float = 0.0
    apy: float = 0.0
    apy_base: Optional[float] = None
    apy_reward: Optional[float] = None


class AdapterStats(BaseModel):
    total_opportunities: int = 0
    by_source: Dict[str, int] = Field(default_factory=dict)
    by_protocol: Dict[str, int] = Field(default_factory=dict)
    total_tvl: float = 0.0
    avg_apy: float = 0.0
    last_update: float = 0.0


class VolumeData(BaseModel):
    protocol: str
    pool: str
    volume_24h: float = 0.0
    volume_7d: float = 0.0
    volume_30d: float = 0.0
    concentration_risk: float = 0.0
    timestamp: float = 0.0


class UserMetrics(BaseModel):
    protocol: str
    unique_users_24h: int = 0
    unique_users_7d: int = 0
    unique_users_30d: int = 0
    active_wallets: int = 0
    new_users: int = 0
    user_retention: float = 0.0
    timestamp: float = 0.0


class AggregatedMetricsData(BaseModel):
    chain: str
    total_volume_24h: float = 0.0
    total_volume_7d: float = 0.0
    total_volume_30d: float = 0.0
    total_users_24h: int = 0
    total_users_7d: int = 0
    total_users_30d: int = 0
    protocol_count: int = 0
    timestamp: float = 0.0


class CacheStats(BaseModel):
    total_entries: int = 0
    expired_entries: int = 0
    volume_entries: int = 0
    user_metrics_entries: int = 0
    aggregated_entries: int = 0
    average_ttl: float = 0.0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class SyncStats(BaseModel):
    last_sync: Optional[float] = None
    successful_syncs: int = 0
    failed_syncs: int = 0
    protocols_updated: int = 0
    avg_sync_time_ms: float = 0.0
    errors: List[str] = Field(default_factory=list)


class SystemReliability(BaseModel):
    overall_health: HealthStatus
    healthy_adapters: int
    total_adapters: int
    average_response_time_ms: float
    uptime: float


class RiskAlert(BaseModel):
    id: str
    type: Literal["threshold_breach", "spike", "trend_change", "correlation_breakdown"]
    severity: Literal["info", "warning", "critical"]
    title: str
    message: str
    metric_name: str
    current_value: float
    threshold: float
    timestamp: float
    protocol_id: Optional[str] = None
    action_required: bool = False
    acknowledged: bool = False


class CategoryScores(BaseModel):
    impermanent_loss: float = 0.0
    smart_contract: float = 0.0
    liquidity: float = 0.0
    market: float = 0.0
    protocol: float = 0.0


class RiskAssessmentResult(BaseModel):
    opportunity_id: str
    overall_score: float
    category: RiskCategory
    scores: CategoryScores
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    value_at_risk: float = 0.0
    recommendations: List[str] = Field(default_factory=list)


class SocialMetrics(BaseModel):
    available: bool = False
    twitter_followers: int = 0
    discord_members: int = 0
    telegram_members: int = 0
    github_commits_30d: int = 0
    sentiment_score: float = 0.0


class ContractInfo(BaseModel):
    available: bool = False
    verified: bool = False
    audited: bool = False
    auditors: List[str] = Field(default_factory=list)
    upgradeable: bool = False
    deployed_at: Optional[float] = None


class DetailPage(BaseModel):
    opportunity: Opportunity
    chart: List[ChartPoint] = Field(default_factory=list)
    risk: Optional[RiskAssessmentResult] = None
    comparable_pools: List[Opportunity] = Field(default_factory=list)
    social: SocialMetrics = Field(default_factory=SocialMetrics)
    contract: ContractInfo = Field(default_factory=ContractInfo)
