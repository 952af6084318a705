import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from .config import get_chain_config, REFERENCE_BASE_LTV
from .models import (
    Agent, CreditVault, CredibilityTier, HistoricalSample, HistoryPoint,
    RiskLevel, VaultRiskMetrics
)

logger = structlog.get_logger()

MIN_LTV = 20.0
MAX_LTV = 85.0
SCORE_ADJUSTMENT_PER_POINT = 0.1
MIN_VOLATILITY = 0.5
MAX_VOLATILITY = 2.0

TIER_BONUS = {
    CredibilityTier.BRONZE: 0.0,
    CredibilityTier.SILVER: 1.0,
    CredibilityTier.GOLD: 2.0,
    CredibilityTier.PLATINUM: 3.0,
    CredibilityTier.DIAMOND: 4.0,
}

# Health factor under which a vault is no longer considered safe
SAFE_HEALTH_FACTOR = 1.2
# Fraction of max LTV at which the LTV dimension starts warning
LTV_WARNING_UTILIZATION = 0.9
LOW_AGENT_SCORE = 50.0

# Risk score weights
LTV_WEIGHT = 0.4
HEALTH_FACTOR_WEIGHT = 0.3
AGENT_SCORE_WEIGHT = 0.2
VOLATILITY_WEIGHT = 0.1


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calculate_ltv(debt_value_usd: float, collateral_value_usd: float) -> float:
    """Current LTV percentage, 0 when there is no collateral"""
    if collateral_value_usd <= 0:
        return 0.0
    return debt_value_usd / collateral_value_usd * 100


def calculate_dynamic_ltv(
    agent: Agent,
    chain_id: int,
    collateral_value_usd: float,
    volatility: float = 1.0
) -> float:
    """Maximum allowed LTV for an agent on a chain, clamped to [20, 85].

    The chain multiplier scales the reference base, the agent's overall score
    and credibility tier add to it, and the result is dampened by market
    volatility. Raises UnsupportedChainError for chains without configuration.
    """
    chain_config = get_chain_config(chain_id)

    ltv = chain_config.ltv_base_multiplier * REFERENCE_BASE_LTV
    ltv += (agent.score.overall - 50) * SCORE_ADJUSTMENT_PER_POINT
    ltv += TIER_BONUS.get(agent.credibility_tier, 0.0)
    ltv /= clamp(volatility, MIN_VOLATILITY, MAX_VOLATILITY)

    return round(clamp(ltv, MIN_LTV, MAX_LTV), 2)


def calculate_health_factor(vault: CreditVault, agent: Agent, volatility: float = 1.0) -> float:
    """Ratio of the vault's allowed LTV to its current LTV.

    Returns infinity for a debt-free vault and 0 for debt without collateral.
    A vault sitting exactly at its maximum LTV has a health factor of 1.0.
    """
    if vault.debt.value_usd == 0:
        return math.inf
    if vault.collateral.value_usd <= 0:
        return 0.0

    max_ltv = calculate_dynamic_ltv(agent, vault.chain_id, vault.collateral.value_usd, volatility)
    current_ltv = calculate_ltv(vault.debt.value_usd, vault.collateral.value_usd)
    return max_ltv / current_ltv


def determine_risk_level(ltv: float, health_factor: float) -> RiskLevel:
    """Classify a vault from its LTV and health factor; health factor dominates"""
    if health_factor < 1.1 or ltv >= 90:
        return RiskLevel.CRITICAL
    if health_factor <= 1.2 or ltv >= 75:
        return RiskLevel.HIGH
    if health_factor <= 1.5 or ltv >= 60:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _ltv_variance(samples: Sequence[HistoricalSample]) -> float:
    if len(samples) < 2:
        return 0.0
    return float(np.var([s.ltv for s in samples]))


def calculate_risk_score(
    vault: CreditVault,
    agent: Agent,
    historical_samples: Sequence[HistoricalSample] = ()
) -> float:
    """Composite risk score (0-100, higher = more risky)"""
    if vault.max_ltv > 0:
        ltv_risk = min(100.0, vault.ltv / vault.max_ltv * 100)
    else:
        ltv_risk = 100.0 if vault.ltv > 0 else 0.0

    if vault.health_factor <= 0:
        health_factor_risk = 100.0
    else:
        # Inverse health factor: 1.0 -> 100, 2.0 -> 50, infinity -> 0
        health_factor_risk = min(100.0, 100.0 / vault.health_factor)

    agent_risk = max(0.0, 100.0 - agent.score.overall)
    volatility_risk = min(100.0, _ltv_variance(historical_samples))

    score = (
        LTV_WEIGHT * ltv_risk +
        HEALTH_FACTOR_WEIGHT * health_factor_risk +
        AGENT_SCORE_WEIGHT * agent_risk +
        VOLATILITY_WEIGHT * volatility_risk
    )
    return round(clamp(score, 0.0, 100.0), 2)


def _warning_pairs(vault: CreditVault, agent: Agent, risk_level: RiskLevel) -> List[Tuple[str, str]]:
    """(warning, recommendation) pairs, one per breached dimension"""
    pairs = []

    if vault.max_ltv > 0 and vault.ltv >= vault.max_ltv * LTV_WARNING_UTILIZATION:
        pairs.append(("LTV nearing maximum", "Consider adding collateral"))

    if vault.health_factor <= SAFE_HEALTH_FACTOR:
        pairs.append(("Health factor below safe threshold", "Consider repaying debt"))

    if agent.score.overall < LOW_AGENT_SCORE:
        pairs.append((
            "Agent credibility score is low",
            "Improve agent credibility score through better performance"
        ))

    if risk_level == RiskLevel.CRITICAL:
        pairs.append(("Vault at risk of liquidation", "Enable liquidation protection immediately"))

    return pairs


def calculate_vault_risk_metrics(
    vault: CreditVault,
    agent: Agent,
    historical_samples: Optional[Sequence[HistoricalSample]] = None
) -> VaultRiskMetrics:
    """Risk snapshot of a vault from its current (already recalculated) fields"""
    samples = list(historical_samples or [])

    risk_level = determine_risk_level(vault.ltv, vault.health_factor)
    risk_score = calculate_risk_score(vault, agent, samples)
    pairs = _warning_pairs(vault, agent, risk_level)

    if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        logger.info(
            "Elevated vault risk",
            vault_id=vault.id,
            risk_level=risk_level.value,
            risk_score=risk_score,
            ltv=vault.ltv
        )

    return VaultRiskMetrics(
        vault_id=vault.id,
        current_ltv=vault.ltv,
        current_health_factor=vault.health_factor,
        risk_score=risk_score,
        risk_level=risk_level,
        warnings=[warning for warning, _ in pairs],
        recommendations=[recommendation for _, recommendation in pairs],
        ltv_history=[HistoryPoint(timestamp=s.timestamp, value=s.ltv) for s in samples],
        health_factor_history=[
            HistoryPoint(timestamp=s.timestamp, value=s.health_factor) for s in samples
        ]
    )
