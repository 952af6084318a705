"""
Vault lifecycle operations.

Collateral and debt setters only replace raw values; callers run
recalculate_vault_metrics afterwards to refresh ltv, max_ltv and the
health factor.
"""
import math
import uuid
from datetime import datetime

import structlog

from .models import Agent, CreditVault, LiquidationProtection, TokenPosition, VaultStatus
from .risk_engine import calculate_dynamic_ltv, calculate_health_factor, calculate_ltv

logger = structlog.get_logger()

PROTECTION_THRESHOLD_RATIO = 0.85
DEFAULT_PROTECTION_COOLDOWN = 3600
DEFAULT_DEBT_TOKEN = "USDC"


def create_credit_vault(
    agent_id: str,
    chain_id: int,
    collateral_token: str,
    collateral_amount: float,
    collateral_value_usd: float,
    max_ltv: float,
    debt_token: str = DEFAULT_DEBT_TOKEN
) -> CreditVault:
    """Open a debt-free vault with liquidation protection at 85% of max LTV"""
    now = datetime.utcnow()
    vault = CreditVault(
        id=f"vault_{uuid.uuid4().hex[:12]}",
        agent_id=agent_id,
        chain_id=chain_id,
        status=VaultStatus.ACTIVE,
        collateral=TokenPosition(
            token=collateral_token,
            amount=collateral_amount,
            value_usd=collateral_value_usd,
            last_updated=now
        ),
        debt=TokenPosition(token=debt_token, amount=0.0, value_usd=0.0, last_updated=now),
        ltv=0.0,
        health_factor=math.inf,
        max_ltv=max_ltv,
        liquidation_protection=LiquidationProtection(
            enabled=True,
            threshold=max_ltv * PROTECTION_THRESHOLD_RATIO,
            cooldown_seconds=DEFAULT_PROTECTION_COOLDOWN
        ),
        created_at=now,
        updated_at=now,
        last_risk_check_at=now
    )

    logger.info("Credit vault created", vault_id=vault.id, agent_id=agent_id, chain_id=chain_id)
    return vault


def update_vault_collateral(vault: CreditVault, amount: float, value_usd: float) -> CreditVault:
    now = datetime.utcnow()
    vault.collateral.amount = amount
    vault.collateral.value_usd = value_usd
    vault.collateral.last_updated = now
    vault.updated_at = now
    return vault


def update_vault_debt(vault: CreditVault, amount: float, value_usd: float) -> CreditVault:
    now = datetime.utcnow()
    vault.debt.amount = amount
    vault.debt.value_usd = value_usd
    vault.debt.last_updated = now
    vault.updated_at = now
    return vault


def recalculate_vault_metrics(vault: CreditVault, agent: Agent, volatility: float = 1.0) -> CreditVault:
    """Refresh ltv, max_ltv and health factor in place and stamp the risk check"""
    ltv = calculate_ltv(vault.debt.value_usd, vault.collateral.value_usd)
    max_ltv = calculate_dynamic_ltv(agent, vault.chain_id, vault.collateral.value_usd, volatility)
    health_factor = calculate_health_factor(vault, agent, volatility)

    now = datetime.utcnow()
    vault.ltv = round(ltv, 2)
    vault.max_ltv = max_ltv
    vault.health_factor = health_factor if math.isinf(health_factor) else round(health_factor, 2)
    vault.last_risk_check_at = now
    vault.updated_at = now

    logger.debug(
        "Vault metrics recalculated",
        vault_id=vault.id,
        ltv=vault.ltv,
        max_ltv=vault.max_ltv,
        health_factor=vault.health_factor
    )
    return vault
