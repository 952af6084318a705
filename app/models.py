from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are kept as naive UTC; aware inputs are converted"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Enumerations
class CredibilityTier(str, Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"
    DIAMOND = "DIAMOND"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    CredibilityTier.BRONZE: 0,
    CredibilityTier.SILVER: 1,
    CredibilityTier.GOLD: 2,
    CredibilityTier.PLATINUM: 3,
    CredibilityTier.DIAMOND: 4,
}


class VaultStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LIQUIDATED = "LIQUIDATED"
    CLOSED = "CLOSED"
    UNDER_REVIEW = "UNDER_REVIEW"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertType(str, Enum):
    WARNING = "WARNING"
    ALERT = "ALERT"
    CRITICAL = "CRITICAL"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertCategory(str, Enum):
    LTV = "LTV"
    HEALTH_FACTOR = "HEALTH_FACTOR"
    MARKET_RISK = "MARKET_RISK"
    LIQUIDATION = "LIQUIDATION"
    PERFORMANCE = "PERFORMANCE"
    SYSTEM = "SYSTEM"


class MarketSentiment(str, Enum):
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"
    BULLISH = "BULLISH"


class ProtectionActionType(str, Enum):
    NOTIFY = "NOTIFY"
    AUTO_REPAY = "AUTO_REPAY"
    COLLATERAL_INCREASE = "COLLATERAL_INCREASE"
    DEBT_REDUCTION = "DEBT_REDUCTION"


# Chain Models
class ChainConfig(BaseModel):
    chain_id: int
    name: str
    native_token: str
    block_explorer: str = ""
    ltv_base_multiplier: float = Field(gt=0)
    min_health_factor: float = Field(gt=1)
    liquidation_penalty: float = 0.0
    grace_period_seconds: int = 0

    class Config:
        frozen = True


# Agent Models
class AgentScore(BaseModel):
    overall: float = Field(ge=0, le=100)
    performance: float = 0.0
    confidence: float = 0.0


class Agent(BaseModel):
    id: str
    name: str = ""
    credibility_tier: CredibilityTier = CredibilityTier.BRONZE
    score: AgentScore


# Vault Models
class TokenPosition(BaseModel):
    token: str
    amount: float = 0.0
    value_usd: float = 0.0
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class LiquidationProtection(BaseModel):
    enabled: bool = True
    threshold: float
    cooldown_seconds: int = 3600
    last_triggered_at: Optional[datetime] = None

    _naive_last_triggered = validator("last_triggered_at", allow_reuse=True)(as_naive_utc)


class CreditVault(BaseModel):
    id: str
    agent_id: str
    chain_id: int
    status: VaultStatus = VaultStatus.ACTIVE

    collateral: TokenPosition
    debt: TokenPosition

    # Derived risk fields, refreshed by recalculate_vault_metrics
    ltv: float = Field(default=0.0, ge=0)
    health_factor: float = float("inf")
    max_ltv: float

    liquidation_protection: LiquidationProtection

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_risk_check_at: datetime = Field(default_factory=datetime.utcnow)


class HistoricalSample(BaseModel):
    timestamp: datetime
    ltv: float
    health_factor: float

    _naive_timestamp = validator("timestamp", allow_reuse=True)(as_naive_utc)


class HistoryPoint(BaseModel):
    timestamp: datetime
    value: float


# Protection Rule Models
class ProtectionConditions(BaseModel):
    ltv_threshold: Optional[float] = None
    health_factor_threshold: Optional[float] = None
    score_threshold: Optional[float] = None


class ProtectionAction(BaseModel):
    type: ProtectionActionType
    parameters: Dict[str, Any] = {}


class ProtectionRule(BaseModel):
    id: str
    vault_id: str
    name: str = ""
    description: str = ""
    conditions: ProtectionConditions = Field(default_factory=ProtectionConditions)
    actions: List[ProtectionAction] = []
    enabled: bool = True
    priority: int = 0
    cooldown_seconds: int = 0
    last_executed_at: Optional[datetime] = None

    _naive_last_executed = validator("last_executed_at", allow_reuse=True)(as_naive_utc)


class ProtectionRuleResult(BaseModel):
    rule_id: str
    action: str
    executed: bool
    message: str


# Risk Models
class VaultRiskMetrics(BaseModel):
    vault_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    current_ltv: float
    current_health_factor: float
    risk_score: float  # 0-100
    risk_level: RiskLevel
    warnings: List[str] = []
    recommendations: List[str] = []
    ltv_history: List[HistoryPoint] = []
    health_factor_history: List[HistoryPoint] = []


class PredictiveRiskMetrics(BaseModel):
    predicted_ltv: float
    predicted_health_factor: float
    risk_probability: float = Field(ge=0, le=1)
    time_horizon_hours: int = 24
    confidence: float = Field(ge=0, le=1)
    factors: List[str] = []


class AlertMetadata(BaseModel):
    current_value: float
    threshold: float


class RiskAlert(BaseModel):
    id: str
    vault_id: str
    type: AlertType
    severity: AlertSeverity
    category: AlertCategory
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    # Status
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    escalation_level: int = Field(default=0, ge=0, le=3)
    auto_escalation: bool = False
    related_alerts: List[str] = []
    metadata: Optional[AlertMetadata] = None


# Market Models
class MarketData(BaseModel):
    chain_id: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    volatility: float = 1.0
    volatility_index: float = 1.0
    gas_price: float = 0.0
    block_number: int = 0
    price_feeds: Dict[str, float] = {}
    market_cap: float = 0.0
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    market_sentiment: MarketSentiment = MarketSentiment.NEUTRAL


class MarketDataUpdate(BaseModel):
    """Partial market data update; unset fields keep their previous values"""
    volatility: Optional[float] = None
    volatility_index: Optional[float] = None
    gas_price: Optional[float] = None
    block_number: Optional[int] = None
    price_feeds: Optional[Dict[str, float]] = None
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None
    price_change_24h: Optional[float] = None
    market_sentiment: Optional[MarketSentiment] = None

    @validator("volatility", "volatility_index")
    def validate_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("volatility must be positive")
        return v


# Monitor Configuration Models
class AlertThresholds(BaseModel):
    ltv_warning: float = 70.0
    ltv_alert: float = 80.0
    ltv_critical: float = 90.0
    health_factor_warning: float = 1.5
    health_factor_alert: float = 1.3
    health_factor_critical: float = 1.1


class AutoProtectionConfig(BaseModel):
    enabled: bool = True
    max_protection_triggers: int = Field(default=3, ge=0)
    protection_cooldown: int = Field(default=3600, ge=0)


class PerformanceConfig(BaseModel):
    max_concurrent_vaults: int = Field(default=100, gt=0)
    batch_size: int = Field(default=10, gt=0)
    timeout_ms: int = Field(default=5000, gt=0)
    retry_attempts: int = Field(default=3, ge=1)


class AnalyticsConfig(BaseModel):
    enable_real_time_metrics: bool = True
    enable_predictive_analysis: bool = True
    enable_correlation_analysis: bool = True
    data_retention_days: int = Field(default=30, gt=0)


class RiskMonitorConfig(BaseModel):
    check_interval: int = Field(default=30000, gt=0)  # milliseconds
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    auto_protection: AutoProtectionConfig = Field(default_factory=AutoProtectionConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)

    def threshold_errors(self) -> List[str]:
        """Ordering problems between warning, alert and critical thresholds"""
        t = self.alert_thresholds
        errors = []
        if not t.ltv_warning <= t.ltv_alert <= t.ltv_critical:
            errors.append("LTV thresholds must satisfy warning <= alert <= critical")
        if not t.health_factor_warning >= t.health_factor_alert >= t.health_factor_critical:
            errors.append("Health factor thresholds must satisfy warning >= alert >= critical")
        return errors


# Monitor Result Models
class PerformanceMetrics(BaseModel):
    total_checks: int = 0
    average_response_time: float = 0.0  # milliseconds
    last_check_time: Optional[datetime] = None
    error_count: int = 0
    success_rate: float = 1.0


class CallPerformance(BaseModel):
    response_time_ms: float
    data_points: int
    accuracy: float


class MonitorVaultResult(BaseModel):
    vault: CreditVault
    risk_metrics: VaultRiskMetrics
    alerts: List[RiskAlert]
    protection_triggered: bool
    predictive_metrics: PredictiveRiskMetrics
    performance_metrics: CallPerformance


# API Request/Response Models
class CreateVaultRequest(BaseModel):
    agent_id: str
    chain_id: int
    collateral_token: str
    collateral_amount: float = Field(gt=0)
    collateral_value_usd: float = Field(gt=0)
    debt_token: str = "USDC"


class PositionUpdateRequest(BaseModel):
    amount: float = Field(ge=0)
    value_usd: float = Field(ge=0)


class MonitorVaultRequest(BaseModel):
    vault_id: str
    historical_data: List[HistoricalSample] = []


class VaultReference(BaseModel):
    vault_id: str


class ProtectionCheckResponse(BaseModel):
    vault_id: str
    should_trigger: bool
    ltv: float
    health_factor: float
    threshold: float


class AcknowledgeAlertRequest(BaseModel):
    acknowledged_by: str


class MarketDataPush(MarketDataUpdate):
    chain_id: int


class SimulateVolatilityRequest(BaseModel):
    chain_id: int
    volatility: float = Field(gt=0)


class SimulatePriceRequest(BaseModel):
    chain_id: int
    token: str
    price: float = Field(ge=0)
