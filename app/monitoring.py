"""
Enhanced risk monitor: market data, alert lifecycle, predictive projection and
performance accounting around per-vault risk evaluation
"""
import asyncio
import time
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import structlog

from .config import CHAIN_CONFIGS
from .error_handling import ErrorCollector
from .market_data import MarketDataSource, refresh_market_data
from .models import (
    Agent, AlertCategory, AlertMetadata, AlertSeverity, AlertType, CallPerformance,
    CreditVault, HistoricalSample, MarketData, MarketDataUpdate, MarketSentiment,
    MonitorVaultResult, PerformanceMetrics, PredictiveRiskMetrics, RiskAlert,
    RiskLevel, RiskMonitorConfig
)
from .protection import should_trigger_liquidation_protection
from .risk_engine import calculate_vault_risk_metrics, clamp
from .vaults import recalculate_vault_metrics

logger = structlog.get_logger()

MIN_PREDICTIVE_SAMPLES = 3
PREDICTION_HORIZON_HOURS = 24
# LTV points per sample above which a history is reported as trending
TREND_SLOPE_THRESHOLD = 0.5

# Severity and escalation level for each alert tier
ALERT_TIERS = {
    AlertType.WARNING: (AlertSeverity.MEDIUM, 1),
    AlertType.ALERT: (AlertSeverity.HIGH, 2),
    AlertType.CRITICAL: (AlertSeverity.CRITICAL, 3),
}

VaultEntry = Tuple[CreditVault, Agent, Sequence[HistoricalSample]]


class EnhancedRiskMonitor:
    """Owns alert and market-data state for a set of monitored vaults.

    Vault evaluation happens per call to monitor_vault. The housekeeping loop
    started by start() refreshes market data from the optional
    market_data_source for every supported chain and updates performance
    counters. The monitor does no locking; callers keep to a single event
    loop.
    """

    def __init__(
        self,
        config: Optional[RiskMonitorConfig] = None,
        market_data_source: Optional[MarketDataSource] = None
    ):
        self.config = config or RiskMonitorConfig()
        self.market_data_source = market_data_source
        self.alerts: Dict[str, RiskAlert] = {}
        self.market_data: Dict[int, MarketData] = {}
        self.performance = PerformanceMetrics()
        self.error_collector = ErrorCollector()

        # Latest risk level per evaluated vault, for summaries
        self._vault_risk_levels: Dict[str, RiskLevel] = {}

        self._monitoring_task: Optional[asyncio.Task] = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self):
        """Start the housekeeping loop"""
        if self._is_running:
            logger.warning("Enhanced risk monitoring is already running")
            return

        self._is_running = True
        self._monitoring_task = asyncio.create_task(self._monitoring_loop())
        logger.info("Enhanced risk monitoring started", check_interval_ms=self.config.check_interval)

    async def stop(self):
        """Stop the housekeeping loop; in-flight vault evaluations are left to finish"""
        if not self._is_running:
            return

        self._is_running = False
        if self._monitoring_task:
            self._monitoring_task.cancel()
            try:
                await self._monitoring_task
            except asyncio.CancelledError:
                pass
            self._monitoring_task = None
        logger.info("Enhanced risk monitoring stopped")

    async def _monitoring_loop(self):
        interval_seconds = self.config.check_interval / 1000
        while self._is_running:
            await self._perform_enhanced_risk_check()
            await asyncio.sleep(interval_seconds)

    async def _perform_enhanced_risk_check(self):
        start_time = time.perf_counter()
        try:
            if self.market_data_source is not None:
                for chain_id in CHAIN_CONFIGS:
                    await refresh_market_data(
                        self, int(chain_id), self.market_data_source,
                        attempts=self.config.performance.retry_attempts
                    )

            active_alerts = sum(1 for alert in self.alerts.values() if not alert.acknowledged)
            self._record_check((time.perf_counter() - start_time) * 1000, success=True)
            logger.debug(
                "Enhanced risk check completed",
                active_alerts=active_alerts,
                tracked_chains=len(self.market_data),
                tracked_vaults=len(self._vault_risk_levels)
            )
        except Exception as e:
            self._record_check((time.perf_counter() - start_time) * 1000, success=False)
            self.error_collector.record_error(e, {"operation": "housekeeping"})

    def _record_check(self, response_time_ms: float, success: bool):
        perf = self.performance
        perf.total_checks += 1
        if not success:
            perf.error_count += 1
        perf.average_response_time += (response_time_ms - perf.average_response_time) / perf.total_checks
        perf.last_check_time = datetime.utcnow()
        perf.success_rate = (perf.total_checks - perf.error_count) / perf.total_checks

    # Market data

    def update_market_data(self, chain_id: int, data: Union[MarketDataUpdate, Mapping[str, Any]]):
        """Merge a partial update into the chain's latest market data"""
        if isinstance(data, MarketDataUpdate):
            data = data.dict(exclude_none=True)

        existing = self.market_data.get(chain_id)
        merged = existing.dict() if existing else {}
        merged.update(data)
        merged["chain_id"] = chain_id
        merged["timestamp"] = data.get("timestamp") or datetime.utcnow()

        self.market_data[chain_id] = MarketData(**merged)
        logger.debug("Market data updated", chain_id=chain_id, fields=sorted(data.keys()))

    def get_market_data(self, chain_id: int) -> Optional[MarketData]:
        return self.market_data.get(chain_id)

    def simulate_market_volatility(self, chain_id: int, volatility: float):
        self.update_market_data(chain_id, {"volatility": volatility, "volatility_index": volatility})

    def simulate_price_update(self, chain_id: int, token: str, price: float):
        market_data = self.market_data.get(chain_id)
        if market_data is None:
            logger.warning("No market data to update price for", chain_id=chain_id, token=token)
            return
        self.update_market_data(chain_id, {"price_feeds": {**market_data.price_feeds, token: price}})

    # Vault evaluation

    async def monitor_vault(
        self,
        vault: CreditVault,
        agent: Agent,
        historical_data: Optional[Sequence[HistoricalSample]] = None
    ) -> MonitorVaultResult:
        """Recalculate a vault, score it, raise alerts and project its risk"""
        start_time = time.perf_counter()
        samples = list(historical_data or [])

        try:
            market_data = self.market_data.get(vault.chain_id)
            volatility = market_data.volatility if market_data and market_data.volatility > 0 else 1.0

            recalculate_vault_metrics(vault, agent, volatility)
            risk_metrics = calculate_vault_risk_metrics(vault, agent, samples)
            alerts = self._generate_alerts(vault)
            protection_triggered = (
                self.config.auto_protection.enabled
                and should_trigger_liquidation_protection(vault, agent, volatility)
            )
            predictive_metrics = self.calculate_predictive_risk_metrics(vault, samples, market_data)
        except Exception as e:
            self._record_check((time.perf_counter() - start_time) * 1000, success=False)
            self.error_collector.record_error(e, {"operation": "monitor_vault", "vault_id": vault.id})
            raise

        for alert in alerts:
            self.alerts[alert.id] = alert
        self._vault_risk_levels[vault.id] = risk_metrics.risk_level

        response_time_ms = (time.perf_counter() - start_time) * 1000
        self._record_check(response_time_ms, success=True)

        return MonitorVaultResult(
            vault=vault,
            risk_metrics=risk_metrics,
            alerts=alerts,
            protection_triggered=protection_triggered,
            predictive_metrics=predictive_metrics,
            performance_metrics=CallPerformance(
                response_time_ms=response_time_ms,
                data_points=len(samples),
                accuracy=clamp(predictive_metrics.confidence, 0.1, 1.0)
            )
        )

    async def monitor_vaults(self, entries: Sequence[VaultEntry]) -> List[Union[MonitorVaultResult, Exception]]:
        """Evaluate several vaults in batches; failures are returned in place of results"""
        limit = self.config.performance.max_concurrent_vaults
        if len(entries) > limit:
            logger.warning("Vault batch truncated", requested=len(entries), limit=limit)
        entries = list(entries)[:limit]

        batch_size = self.config.performance.batch_size
        results: List[Union[MonitorVaultResult, Exception]] = []
        for i in range(0, len(entries), batch_size):
            batch = entries[i:i + batch_size]
            batch_results = await asyncio.gather(
                *(self.monitor_vault(vault, agent, history) for vault, agent, history in batch),
                return_exceptions=True
            )
            for (vault, _, _), result in zip(batch, batch_results):
                if isinstance(result, Exception):
                    logger.error("Error monitoring vault", vault_id=vault.id, error=str(result))
            results.extend(batch_results)

        return results

    def _generate_alerts(self, vault: CreditVault) -> List[RiskAlert]:
        # Every breach produces a new alert; existing unacknowledged alerts for
        # the same vault and category are not consulted.
        thresholds = self.config.alert_thresholds
        alerts = []
        timestamp = datetime.utcnow()

        ltv = vault.ltv
        if ltv >= thresholds.ltv_critical:
            alerts.append(self._alert(
                vault, AlertType.CRITICAL, AlertCategory.LTV,
                f"LTV {ltv:.2f}% exceeds critical threshold",
                AlertMetadata(current_value=ltv, threshold=thresholds.ltv_critical),
                timestamp
            ))
        elif ltv >= thresholds.ltv_alert:
            alerts.append(self._alert(
                vault, AlertType.ALERT, AlertCategory.LTV,
                f"LTV {ltv:.2f}% exceeds alert threshold",
                AlertMetadata(current_value=ltv, threshold=thresholds.ltv_alert),
                timestamp
            ))
        elif ltv >= thresholds.ltv_warning:
            alerts.append(self._alert(
                vault, AlertType.WARNING, AlertCategory.LTV,
                f"LTV {ltv:.2f}% approaching alert threshold",
                AlertMetadata(current_value=ltv, threshold=thresholds.ltv_warning),
                timestamp
            ))

        health_factor = vault.health_factor
        if health_factor <= thresholds.health_factor_critical:
            alerts.append(self._alert(
                vault, AlertType.CRITICAL, AlertCategory.HEALTH_FACTOR,
                f"Health factor {health_factor:.2f} below critical threshold",
                AlertMetadata(current_value=health_factor, threshold=thresholds.health_factor_critical),
                timestamp
            ))
        elif health_factor <= thresholds.health_factor_alert:
            alerts.append(self._alert(
                vault, AlertType.ALERT, AlertCategory.HEALTH_FACTOR,
                f"Health factor {health_factor:.2f} below alert threshold",
                AlertMetadata(current_value=health_factor, threshold=thresholds.health_factor_alert),
                timestamp
            ))
        elif health_factor <= thresholds.health_factor_warning:
            alerts.append(self._alert(
                vault, AlertType.WARNING, AlertCategory.HEALTH_FACTOR,
                f"Health factor {health_factor:.2f} approaching alert threshold",
                AlertMetadata(current_value=health_factor, threshold=thresholds.health_factor_warning),
                timestamp
            ))

        for alert in alerts:
            log = logger.warning if alert.type == AlertType.CRITICAL else logger.info
            log(
                "Risk alert raised",
                alert_id=alert.id,
                vault_id=vault.id,
                alert_type=alert.type.value,
                category=alert.category.value
            )
        return alerts

    @staticmethod
    def _alert(
        vault: CreditVault,
        alert_type: AlertType,
        category: AlertCategory,
        message: str,
        metadata: AlertMetadata,
        timestamp: datetime
    ) -> RiskAlert:
        severity, escalation_level = ALERT_TIERS[alert_type]
        return RiskAlert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            vault_id=vault.id,
            type=alert_type,
            severity=severity,
            category=category,
            message=message,
            timestamp=timestamp,
            escalation_level=escalation_level,
            auto_escalation=alert_type == AlertType.CRITICAL,
            metadata=metadata
        )

    # Predictive projection

    def calculate_predictive_risk_metrics(
        self,
        vault: CreditVault,
        historical_data: Sequence[HistoricalSample],
        market_data: Optional[MarketData] = None
    ) -> PredictiveRiskMetrics:
        """Project LTV and health factor over the next 24 hours"""
        if not self.config.analytics.enable_predictive_analysis:
            return self._passthrough_prediction(vault, "Predictive analysis disabled")
        if len(historical_data) < MIN_PREDICTIVE_SAMPLES:
            return self._passthrough_prediction(vault, "Insufficient historical data")

        volatility_index = market_data.volatility_index if market_data else 1.0
        multiplier = clamp(volatility_index, 0.5, 2.0)

        predicted_ltv = clamp(vault.ltv * multiplier, 0.0, 100.0)
        predicted_health_factor = max(0.1, vault.health_factor / multiplier)

        if vault.max_ltv >= 100:
            risk_probability = 1.0 if predicted_ltv >= vault.max_ltv else 0.0
        else:
            risk_probability = clamp((predicted_ltv - vault.max_ltv) / (100 - vault.max_ltv), 0.0, 1.0)

        factors = [f"Market volatility: {volatility_index:.2f}"]

        slope = _ltv_trend(historical_data)
        if slope > TREND_SLOPE_THRESHOLD:
            factors.append(f"LTV trending up ({slope:.2f} per sample)")
        elif slope < -TREND_SLOPE_THRESHOLD:
            factors.append(f"LTV trending down ({slope:.2f} per sample)")

        chain_config = CHAIN_CONFIGS.get(vault.chain_id)
        if chain_config and predicted_health_factor < chain_config.min_health_factor:
            factors.append(
                f"Predicted health factor below {chain_config.name} minimum "
                f"({chain_config.min_health_factor:.2f})"
            )

        return PredictiveRiskMetrics(
            predicted_ltv=predicted_ltv,
            predicted_health_factor=predicted_health_factor,
            risk_probability=risk_probability,
            time_horizon_hours=PREDICTION_HORIZON_HOURS,
            confidence=min(1.0, len(historical_data) / 10),
            factors=factors
        )

    @staticmethod
    def _passthrough_prediction(vault: CreditVault, reason: str) -> PredictiveRiskMetrics:
        return PredictiveRiskMetrics(
            predicted_ltv=vault.ltv,
            predicted_health_factor=vault.health_factor,
            risk_probability=0.5,
            time_horizon_hours=PREDICTION_HORIZON_HOURS,
            confidence=0.1,
            factors=[reason]
        )

    # Alert queries

    def get_all_alerts(self) -> List[RiskAlert]:
        return list(self.alerts.values())

    def get_active_alerts(self) -> List[RiskAlert]:
        return [alert for alert in self.alerts.values() if not alert.acknowledged]

    def get_vault_alerts(self, vault_id: str) -> List[RiskAlert]:
        return [alert for alert in self.alerts.values() if alert.vault_id == vault_id]

    def get_alerts_by_category(self, category: AlertCategory) -> List[RiskAlert]:
        return [alert for alert in self.alerts.values() if alert.category == category]

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[RiskAlert]:
        return [alert for alert in self.alerts.values() if alert.severity == severity]

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        """Acknowledge an alert; returns False for unknown ids or a missing acknowledger"""
        alert = self.alerts.get(alert_id)
        if alert is None:
            return False
        if not acknowledged_by:
            logger.warning("Alert acknowledgement without acknowledger", alert_id=alert_id)
            return False
        if alert.acknowledged:
            return True

        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        alert.acknowledged_at = datetime.utcnow()
        logger.info("Alert acknowledged", alert_id=alert_id, acknowledged_by=acknowledged_by)
        return True

    # Reporting

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.performance.copy()

    def get_enhanced_risk_summary(self) -> Dict[str, Any]:
        alerts = list(self.alerts.values())
        levels = Counter(self._vault_risk_levels.values())

        sentiments = Counter(data.market_sentiment for data in self.market_data.values())
        if self.market_data:
            average_volatility = float(np.mean([data.volatility_index for data in self.market_data.values()]))
            market_sentiment = sentiments.most_common(1)[0][0]
        else:
            average_volatility = 1.0
            market_sentiment = MarketSentiment.NEUTRAL

        return {
            "total_vaults": len(self._vault_risk_levels),
            "critical_risk": levels[RiskLevel.CRITICAL],
            "high_risk": levels[RiskLevel.HIGH],
            "medium_risk": levels[RiskLevel.MEDIUM],
            "low_risk": levels[RiskLevel.LOW],
            "total_alerts": len(alerts),
            "unacknowledged_alerts": sum(1 for alert in alerts if not alert.acknowledged),
            "alerts_by_category": dict(Counter(alert.category.value for alert in alerts)),
            "alerts_by_severity": dict(Counter(alert.severity.value for alert in alerts)),
            "performance_metrics": self.get_performance_metrics(),
            "market_overview": {
                "total_chains": len(self.market_data),
                "average_volatility": average_volatility,
                "market_sentiment": market_sentiment.value
            }
        }

    def get_enhanced_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._is_running,
            "last_check": self.performance.last_check_time,
            "config": self.config,
            "alerts_count": len(self.alerts),
            "performance_metrics": self.get_performance_metrics(),
            "market_data_count": len(self.market_data),
            "vault_metrics_history_count": len(self._vault_risk_levels),
            "error_summary": self.error_collector.get_error_summary(hours=24)
        }


def _ltv_trend(samples: Sequence[HistoricalSample]) -> float:
    """Least-squares slope of LTV across samples ordered by time"""
    ordered = sorted(samples, key=lambda s: s.timestamp)
    ltvs = np.array([s.ltv for s in ordered], dtype=float)
    if len(ltvs) < 2:
        return 0.0
    slope, _ = np.polyfit(np.arange(len(ltvs)), ltvs, 1)
    return float(slope)
