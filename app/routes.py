from fastapi import APIRouter, Depends, Request
from typing import Optional, List
import structlog
from datetime import datetime

from .database import RecordStore
from .error_handling import NotFoundError, ValidationError
from .models import (
    Agent, AlertCategory, AlertSeverity, CreditVault, ProtectionRule,
    ProtectionRuleResult, MonitorVaultResult, PerformanceMetrics, MarketData,
    CreateVaultRequest, PositionUpdateRequest, MonitorVaultRequest, VaultReference,
    ProtectionCheckResponse, AcknowledgeAlertRequest, MarketDataPush,
    SimulateVolatilityRequest, SimulatePriceRequest
)
from .monitoring import EnhancedRiskMonitor
from .protection import execute_protection_rules, should_trigger_liquidation_protection
from .risk_engine import calculate_dynamic_ltv
from .vaults import (
    create_credit_vault, update_vault_collateral, update_vault_debt,
    recalculate_vault_metrics
)

logger = structlog.get_logger()

router = APIRouter()


def get_monitor(request: Request) -> EnhancedRiskMonitor:
    return request.app.state.monitor


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def chain_volatility(monitor: EnhancedRiskMonitor, chain_id: int) -> float:
    """Latest volatility for a chain, neutral when no market data was pushed"""
    market_data = monitor.get_market_data(chain_id)
    if market_data is None or market_data.volatility <= 0:
        return 1.0
    return market_data.volatility


# Risk monitor

@router.get("/api/risk-monitor/status")
async def get_monitor_status(monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    """Monitor state, configuration and recent errors"""
    return monitor.get_enhanced_status()


@router.get("/api/risk-monitor/summary")
async def get_risk_summary(monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    return monitor.get_enhanced_risk_summary()


@router.get("/api/risk-monitor/performance", response_model=PerformanceMetrics)
async def get_performance(monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    return monitor.get_performance_metrics()


@router.get("/api/risk-monitor/alerts")
async def get_alerts(
    vault_id: Optional[str] = None,
    category: Optional[AlertCategory] = None,
    severity: Optional[AlertSeverity] = None,
    scope: str = "active",
    monitor: EnhancedRiskMonitor = Depends(get_monitor)
):
    """List alerts; unacknowledged only unless scope=all"""
    if scope not in ("active", "all"):
        raise ValidationError(f"Unknown alert scope: {scope}")

    alerts = monitor.get_all_alerts() if scope == "all" else monitor.get_active_alerts()
    if vault_id:
        alerts = [a for a in alerts if a.vault_id == vault_id]
    if category:
        alerts = [a for a in alerts if a.category == category]
    if severity:
        alerts = [a for a in alerts if a.severity == severity]

    alerts.sort(key=lambda a: a.timestamp, reverse=True)
    return {"alerts": alerts, "total_count": len(alerts)}


@router.post("/api/risk-monitor/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    body: AcknowledgeAlertRequest,
    monitor: EnhancedRiskMonitor = Depends(get_monitor)
):
    if alert_id not in monitor.alerts:
        raise NotFoundError(f"Alert not found: {alert_id}")
    if not monitor.acknowledge_alert(alert_id, body.acknowledged_by):
        raise ValidationError("acknowledged_by must not be empty")

    return {"success": True, "alert": monitor.alerts[alert_id]}


@router.get("/api/risk-monitor/market-data")
async def get_market_data(
    chain_id: Optional[int] = None,
    monitor: EnhancedRiskMonitor = Depends(get_monitor)
):
    if chain_id is None:
        return {"market_data": list(monitor.market_data.values())}

    market_data = monitor.get_market_data(chain_id)
    if market_data is None:
        raise NotFoundError(f"No market data for chain {chain_id}")
    return market_data


@router.post("/api/risk-monitor/market-data", response_model=MarketData)
async def push_market_data(body: MarketDataPush, monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    monitor.update_market_data(body.chain_id, body.dict(exclude_none=True, exclude={"chain_id"}))
    return monitor.get_market_data(body.chain_id)


@router.post("/api/risk-monitor/start")
async def start_monitor(monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    await monitor.start()
    return {"is_running": monitor.is_running}


@router.post("/api/risk-monitor/stop")
async def stop_monitor(monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    await monitor.stop()
    return {"is_running": monitor.is_running}


@router.post("/api/risk-monitor/monitor-vault", response_model=MonitorVaultResult)
async def monitor_vault(
    body: MonitorVaultRequest,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    """Run a full risk evaluation for a stored vault"""
    vault = store.require_vault(body.vault_id)
    agent = store.require_agent(vault.agent_id)

    result = await monitor.monitor_vault(vault, agent, body.historical_data)
    store.save_vault(result.vault)

    logger.info(
        "Vault monitored",
        vault_id=vault.id,
        risk_level=result.risk_metrics.risk_level.value,
        alerts=len(result.alerts),
        protection_triggered=result.protection_triggered
    )
    return result


@router.post("/api/risk-monitor/simulate/volatility")
async def simulate_volatility(body: SimulateVolatilityRequest, monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    monitor.simulate_market_volatility(body.chain_id, body.volatility)
    return {"success": True, "market_data": monitor.get_market_data(body.chain_id)}


@router.post("/api/risk-monitor/simulate/price")
async def simulate_price(body: SimulatePriceRequest, monitor: EnhancedRiskMonitor = Depends(get_monitor)):
    market_data = monitor.get_market_data(body.chain_id)
    if market_data is None:
        raise NotFoundError(f"No market data for chain {body.chain_id}")

    monitor.simulate_price_update(body.chain_id, body.token, body.price)
    return {"success": True, "market_data": monitor.get_market_data(body.chain_id)}


# Agents and credit vaults

@router.post("/api/agents", response_model=Agent)
async def register_agent(agent: Agent, store: RecordStore = Depends(get_store)):
    return store.save_agent(agent)


@router.get("/api/agents/{agent_id}", response_model=Agent)
async def get_agent(agent_id: str, store: RecordStore = Depends(get_store)):
    return store.require_agent(agent_id)


@router.post("/api/credit-vaults", response_model=CreditVault)
async def create_vault(
    body: CreateVaultRequest,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    agent = store.require_agent(body.agent_id)
    max_ltv = calculate_dynamic_ltv(
        agent,
        body.chain_id,
        body.collateral_value_usd,
        chain_volatility(monitor, body.chain_id)
    )

    vault = create_credit_vault(
        agent_id=agent.id,
        chain_id=body.chain_id,
        collateral_token=body.collateral_token,
        collateral_amount=body.collateral_amount,
        collateral_value_usd=body.collateral_value_usd,
        max_ltv=max_ltv,
        debt_token=body.debt_token
    )
    return store.save_vault(vault)


@router.get("/api/credit-vaults/{vault_id}", response_model=CreditVault)
async def get_vault(vault_id: str, store: RecordStore = Depends(get_store)):
    return store.require_vault(vault_id)


@router.post("/api/credit-vaults/{vault_id}/collateral", response_model=CreditVault)
async def update_collateral(
    vault_id: str,
    body: PositionUpdateRequest,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    vault = store.require_vault(vault_id)
    agent = store.require_agent(vault.agent_id)

    update_vault_collateral(vault, body.amount, body.value_usd)
    return recalculate_vault_metrics(vault, agent, chain_volatility(monitor, vault.chain_id))


@router.post("/api/credit-vaults/{vault_id}/debt", response_model=CreditVault)
async def update_debt(
    vault_id: str,
    body: PositionUpdateRequest,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    vault = store.require_vault(vault_id)
    agent = store.require_agent(vault.agent_id)

    update_vault_debt(vault, body.amount, body.value_usd)
    return recalculate_vault_metrics(vault, agent, chain_volatility(monitor, vault.chain_id))


@router.post("/api/credit-vaults/{vault_id}/recalculate", response_model=CreditVault)
async def recalculate_vault(
    vault_id: str,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    vault = store.require_vault(vault_id)
    agent = store.require_agent(vault.agent_id)
    return recalculate_vault_metrics(vault, agent, chain_volatility(monitor, vault.chain_id))


# Liquidation protection

@router.post("/api/liquidation-protection/rules", response_model=ProtectionRule)
async def save_protection_rule(rule: ProtectionRule, store: RecordStore = Depends(get_store)):
    store.require_vault(rule.vault_id)
    return store.save_rule(rule)


@router.post("/api/liquidation-protection/check", response_model=ProtectionCheckResponse)
async def check_protection(
    body: VaultReference,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    vault = store.require_vault(body.vault_id)
    agent = store.require_agent(vault.agent_id)

    return ProtectionCheckResponse(
        vault_id=vault.id,
        should_trigger=should_trigger_liquidation_protection(
            vault, agent, chain_volatility(monitor, vault.chain_id)
        ),
        ltv=vault.ltv,
        health_factor=vault.health_factor,
        threshold=vault.liquidation_protection.threshold
    )


@router.post("/api/liquidation-protection/execute")
async def execute_protection(
    body: VaultReference,
    monitor: EnhancedRiskMonitor = Depends(get_monitor),
    store: RecordStore = Depends(get_store)
):
    vault = store.require_vault(body.vault_id)
    agent = store.require_agent(vault.agent_id)

    results: List[ProtectionRuleResult] = execute_protection_rules(
        vault,
        store.get_vault_rules(vault.id),
        agent,
        chain_volatility(monitor, vault.chain_id)
    )
    return {
        "vault_id": vault.id,
        "results": results,
        "executed_count": sum(1 for r in results if r.executed),
        "timestamp": datetime.utcnow().isoformat()
    }
