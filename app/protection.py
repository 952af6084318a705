"""
Liquidation protection: the trigger decision and the prioritized rule engine
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from .error_handling import ProtectionActionError
from .models import (
    Agent, CreditVault, ProtectionAction, ProtectionActionType, ProtectionRule,
    ProtectionRuleResult, as_naive_utc
)
from .risk_engine import calculate_health_factor

logger = structlog.get_logger()

# Health factor at or under which protection fires regardless of LTV
PROTECTION_HEALTH_FACTOR = 1.0

ActionHandler = Callable[[CreditVault, ProtectionRule, ProtectionAction], None]


class ActionHandlerRegistry:
    """Maps protection action types to host-supplied handlers"""

    def __init__(self, handlers: Optional[Dict[ProtectionActionType, ActionHandler]] = None):
        self.handlers: Dict[ProtectionActionType, ActionHandler] = {
            action_type: _log_action for action_type in ProtectionActionType
        }
        if handlers:
            self.handlers.update(handlers)

    def register(self, action_type: ProtectionActionType, handler: ActionHandler):
        self.handlers[action_type] = handler
        logger.info("Registered protection action handler", action_type=action_type.value)

    def dispatch(self, vault: CreditVault, rule: ProtectionRule, action: ProtectionAction):
        self.handlers[action.type](vault, rule, action)


def _log_action(vault: CreditVault, rule: ProtectionRule, action: ProtectionAction):
    logger.info(
        "Protection action requested",
        vault_id=vault.id,
        rule_id=rule.id,
        action_type=action.type.value,
        parameters=action.parameters
    )


default_action_handlers = ActionHandlerRegistry()


def _in_cooldown(last_at: Optional[datetime], cooldown_seconds: int, now: datetime) -> bool:
    if last_at is None:
        return False
    return as_naive_utc(now) - as_naive_utc(last_at) < timedelta(seconds=cooldown_seconds)


def should_trigger_liquidation_protection(
    vault: CreditVault,
    agent: Agent,
    volatility: float = 1.0,
    now: Optional[datetime] = None
) -> bool:
    """Whether liquidation protection should fire for the vault right now"""
    protection = vault.liquidation_protection
    if not protection.enabled:
        return False

    now = as_naive_utc(now or datetime.utcnow())
    if _in_cooldown(protection.last_triggered_at, protection.cooldown_seconds, now):
        return False

    if vault.ltv >= protection.threshold:
        return True

    return calculate_health_factor(vault, agent, volatility) <= PROTECTION_HEALTH_FACTOR


def _conditions_met(rule: ProtectionRule, vault: CreditVault, agent: Agent, health_factor: float) -> bool:
    conditions = rule.conditions
    if conditions.ltv_threshold is not None and vault.ltv < conditions.ltv_threshold:
        return False
    if conditions.health_factor_threshold is not None and health_factor > conditions.health_factor_threshold:
        return False
    if conditions.score_threshold is not None and agent.score.overall > conditions.score_threshold:
        return False
    return True


def execute_protection_rules(
    vault: CreditVault,
    rules: Sequence[ProtectionRule],
    agent: Agent,
    volatility: float = 1.0,
    handlers: Optional[ActionHandlerRegistry] = None,
    now: Optional[datetime] = None
) -> List[ProtectionRuleResult]:
    """Run enabled, matching rules in descending priority order.

    Conditions are evaluated against a single snapshot of the vault before any
    rule runs, so one rule's actions never change whether another rule
    matches within the same pass. Rules still in cooldown are reported but not
    executed.
    """
    handlers = handlers or default_action_handlers
    now = as_naive_utc(now or datetime.utcnow())
    health_factor = calculate_health_factor(vault, agent, volatility)

    eligible = [
        rule for rule in rules
        if rule.enabled and _conditions_met(rule, vault, agent, health_factor)
    ]
    eligible.sort(key=lambda rule: (-rule.priority, rule.id))

    results = []
    for rule in eligible:
        if _in_cooldown(rule.last_executed_at, rule.cooldown_seconds, now):
            results.append(ProtectionRuleResult(
                rule_id=rule.id,
                action=rule.name,
                executed=False,
                message="Rule in cooldown period"
            ))
            continue

        try:
            for action in rule.actions:
                handlers.dispatch(vault, rule, action)
        except ProtectionActionError as e:
            logger.error("Protection rule failed", vault_id=vault.id, rule_id=rule.id, error=str(e))
            results.append(ProtectionRuleResult(
                rule_id=rule.id,
                action=rule.name,
                executed=False,
                message=f"Rule execution failed: {e}"
            ))
            continue

        rule.last_executed_at = now
        results.append(ProtectionRuleResult(
            rule_id=rule.id,
            action=rule.name,
            executed=True,
            message="Rule executed successfully"
        ))

    logger.info(
        "Protection rules evaluated",
        vault_id=vault.id,
        eligible_rules=len(eligible),
        executed=sum(1 for r in results if r.executed)
    )
    return results
