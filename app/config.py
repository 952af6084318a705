from enum import IntEnum
from typing import Dict

from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings

from .error_handling import UnsupportedChainError, ValidationError
from .models import ChainConfig, RiskMonitorConfig


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Service Configuration
    RISK_MONITOR_PORT: int = 8001
    MONITOR_AUTOSTART: bool = True

    # Monitor Configuration
    CHECK_INTERVAL_MS: int = 30000
    LTV_WARNING: float = 70.0
    LTV_ALERT: float = 80.0
    LTV_CRITICAL: float = 90.0
    HEALTH_FACTOR_WARNING: float = 1.5
    HEALTH_FACTOR_ALERT: float = 1.3
    HEALTH_FACTOR_CRITICAL: float = 1.1

    # Auto Protection
    AUTO_PROTECTION_ENABLED: bool = True
    MAX_PROTECTION_TRIGGERS: int = 3
    PROTECTION_COOLDOWN_SECONDS: int = 3600

    # Performance
    MAX_CONCURRENT_VAULTS: int = 100
    BATCH_SIZE: int = 10
    TIMEOUT_MS: int = 5000
    MARKET_DATA_RETRY_ATTEMPTS: int = 3

    # Analytics
    ENABLE_PREDICTIVE_ANALYSIS: bool = True
    DATA_RETENTION_DAYS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env


# Global settings instance
settings = Settings()


class ChainId(IntEnum):
    ETHEREUM = 1
    ARBITRUM = 42161
    POLYGON = 137


# Reference base LTV percentage scaled by each chain's multiplier
REFERENCE_BASE_LTV = 70.0

CHAIN_CONFIGS: Dict[int, ChainConfig] = {
    ChainId.ETHEREUM: ChainConfig(
        chain_id=ChainId.ETHEREUM,
        name="Ethereum",
        native_token="ETH",
        block_explorer="https://etherscan.io",
        ltv_base_multiplier=1.0,
        min_health_factor=1.1,
        liquidation_penalty=0.05,
        grace_period_seconds=3600
    ),
    ChainId.ARBITRUM: ChainConfig(
        chain_id=ChainId.ARBITRUM,
        name="Arbitrum",
        native_token="ETH",
        block_explorer="https://arbiscan.io",
        ltv_base_multiplier=0.95,
        min_health_factor=1.15,
        liquidation_penalty=0.06,
        grace_period_seconds=1800
    ),
    ChainId.POLYGON: ChainConfig(
        chain_id=ChainId.POLYGON,
        name="Polygon",
        native_token="MATIC",
        block_explorer="https://polygonscan.com",
        ltv_base_multiplier=0.90,
        min_health_factor=1.2,
        liquidation_penalty=0.07,
        grace_period_seconds=1200
    ),
}


def get_chain_config(chain_id: int) -> ChainConfig:
    """Look up chain parameters, raising UnsupportedChainError on a miss"""
    config = CHAIN_CONFIGS.get(chain_id)
    if config is None:
        raise UnsupportedChainError(chain_id)
    return config


def build_monitor_config(source: Settings = settings) -> RiskMonitorConfig:
    """Build the monitor configuration from environment settings.

    Goes through load_monitor_config, so misordered thresholds raise
    ValidationError here as well.
    """
    return load_monitor_config({
        "check_interval": source.CHECK_INTERVAL_MS,
        "alert_thresholds": {
            "ltv_warning": source.LTV_WARNING,
            "ltv_alert": source.LTV_ALERT,
            "ltv_critical": source.LTV_CRITICAL,
            "health_factor_warning": source.HEALTH_FACTOR_WARNING,
            "health_factor_alert": source.HEALTH_FACTOR_ALERT,
            "health_factor_critical": source.HEALTH_FACTOR_CRITICAL
        },
        "auto_protection": {
            "enabled": source.AUTO_PROTECTION_ENABLED,
            "max_protection_triggers": source.MAX_PROTECTION_TRIGGERS,
            "protection_cooldown": source.PROTECTION_COOLDOWN_SECONDS
        },
        "performance": {
            "max_concurrent_vaults": source.MAX_CONCURRENT_VAULTS,
            "batch_size": source.BATCH_SIZE,
            "timeout_ms": source.TIMEOUT_MS,
            "retry_attempts": source.MARKET_DATA_RETRY_ATTEMPTS
        },
        "analytics": {
            "enable_predictive_analysis": source.ENABLE_PREDICTIVE_ANALYSIS,
            "data_retention_days": source.DATA_RETENTION_DAYS
        }
    })


# Defaults used when a host does not supply its own configuration
DEFAULT_MONITOR_CONFIG = RiskMonitorConfig()


def load_monitor_config(data: Dict) -> RiskMonitorConfig:
    """Parse a monitor configuration mapping, raising ValidationError when malformed"""
    try:
        config = RiskMonitorConfig(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid monitor configuration: {e}") from e

    problems = config.threshold_errors()
    if problems:
        raise ValidationError("; ".join(problems))
    return config
