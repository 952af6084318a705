import pytest
import os
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["MONITOR_AUTOSTART"] = "false"

from app.main import app
from app.config import ChainId
from app.models import (
    Agent, AgentScore, CredibilityTier, CreditVault, HistoricalSample,
    ProtectionAction, ProtectionActionType, ProtectionConditions, ProtectionRule,
    RiskMonitorConfig
)
from app.monitoring import EnhancedRiskMonitor
from app.vaults import create_credit_vault, update_vault_debt, recalculate_vault_metrics


@pytest.fixture
def client():
    """Test client with the application lifespan running"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sample_agent():
    """Gold-tier agent with a strong score"""
    return Agent(
        id="agent_alpha",
        name="Alpha Trader",
        credibility_tier=CredibilityTier.GOLD,
        score=AgentScore(overall=82, performance=78, confidence=0.9)
    )


@pytest.fixture
def weak_agent():
    """Bronze-tier agent with a poor score"""
    return Agent(
        id="agent_weak",
        name="Weak Trader",
        credibility_tier=CredibilityTier.BRONZE,
        score=AgentScore(overall=30, performance=20, confidence=0.3)
    )


@pytest.fixture
def sample_vault(sample_agent) -> CreditVault:
    """Ethereum vault with $10,000 of collateral and no debt"""
    return create_credit_vault(
        agent_id=sample_agent.id,
        chain_id=ChainId.ETHEREUM,
        collateral_token="WETH",
        collateral_amount=4.0,
        collateral_value_usd=10000.0,
        max_ltv=75.2
    )


@pytest.fixture
def indebted_vault(sample_vault, sample_agent) -> CreditVault:
    """Vault borrowing $5,000 against $10,000 of collateral, recalculated"""
    update_vault_debt(sample_vault, 5000.0, 5000.0)
    return recalculate_vault_metrics(sample_vault, sample_agent)


@pytest.fixture
def historical_samples():
    """Ten hourly samples with a steadily rising LTV"""
    start = datetime.utcnow() - timedelta(hours=10)
    return [
        HistoricalSample(timestamp=start + timedelta(hours=i), ltv=40.0 + i * 2, health_factor=1.9 - i * 0.05)
        for i in range(10)
    ]


@pytest.fixture
def monitor_config():
    return RiskMonitorConfig(check_interval=10)


@pytest.fixture
def monitor(monitor_config):
    return EnhancedRiskMonitor(monitor_config)


@pytest.fixture
def sample_rules(sample_vault):
    """Three rules for the sample vault with distinct priorities"""
    return [
        ProtectionRule(
            id="rule_notify",
            vault_id=sample_vault.id,
            name="Notify owner",
            conditions=ProtectionConditions(ltv_threshold=40.0),
            actions=[ProtectionAction(type=ProtectionActionType.NOTIFY, parameters={"channel": "email"})],
            priority=1
        ),
        ProtectionRule(
            id="rule_repay",
            vault_id=sample_vault.id,
            name="Auto repay",
            conditions=ProtectionConditions(ltv_threshold=45.0, health_factor_threshold=2.0),
            actions=[ProtectionAction(type=ProtectionActionType.AUTO_REPAY, parameters={"percent": 25})],
            priority=10,
            cooldown_seconds=600
        ),
        ProtectionRule(
            id="rule_collateral",
            vault_id=sample_vault.id,
            name="Top up collateral",
            conditions=ProtectionConditions(ltv_threshold=45.0),
            actions=[ProtectionAction(type=ProtectionActionType.COLLATERAL_INCREASE)],
            priority=5
        ),
    ]
