"""
In-memory record store backing the HTTP layer.

Durable storage of agents, vaults and protection rules belongs to the host;
this store only keeps the records the API needs to look up by id between
requests.
"""
from typing import Dict, List, Optional

import structlog

from .error_handling import NotFoundError
from .models import Agent, CreditVault, ProtectionRule

logger = structlog.get_logger()


class RecordStore:
    def __init__(self):
        self.agents: Dict[str, Agent] = {}
        self.vaults: Dict[str, CreditVault] = {}
        self.rules: Dict[str, ProtectionRule] = {}

    def save_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    def save_vault(self, vault: CreditVault) -> CreditVault:
        self.vaults[vault.id] = vault
        return vault

    def get_vault(self, vault_id: str) -> Optional[CreditVault]:
        return self.vaults.get(vault_id)

    def save_rule(self, rule: ProtectionRule) -> ProtectionRule:
        self.rules[rule.id] = rule
        return rule

    def get_vault_rules(self, vault_id: str) -> List[ProtectionRule]:
        return [rule for rule in self.rules.values() if rule.vault_id == vault_id]

    def require_agent(self, agent_id: str) -> Agent:
        """Get an agent, raising NotFoundError on a miss"""
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def require_vault(self, vault_id: str) -> CreditVault:
        """Get a vault, raising NotFoundError on a miss"""
        vault = self.get_vault(vault_id)
        if vault is None:
            raise NotFoundError(f"Vault not found: {vault_id}")
        return vault

    def clear(self):
        self.agents.clear()
        self.vaults.clear()
        self.rules.clear()
        logger.info("Record store cleared")

    def health_check(self) -> dict:
        return {
            "status": "connected",
            "agents": len(self.agents),
            "vaults": len(self.vaults),
            "rules": len(self.rules)
        }
