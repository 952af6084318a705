"""
Vault Risk Monitor - liquidation-risk monitoring for agent credit vaults

Continuously evaluates collateralized credit vaults owned by autonomous
agents: dynamic LTV limits per chain, agent score and market volatility,
health factors, composite risk scores, threshold alerts, prioritized
liquidation-protection rules and a short-horizon predictive projection.

Version: 1.0.0
"""

__version__ = "1.0.0"

from .main import app
from .config import settings

__all__ = ["app", "settings"]
