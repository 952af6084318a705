import asyncio
import pytest

from app.error_handling import MarketDataError, UnsupportedChainError
from app.models import (
    AlertCategory, AlertSeverity, AlertThresholds, AlertType, AnalyticsConfig,
    AutoProtectionConfig, MarketDataUpdate, MarketSentiment, PerformanceConfig,
    RiskLevel, RiskMonitorConfig
)
from app.monitoring import EnhancedRiskMonitor
from app.vaults import create_credit_vault, update_vault_debt


@pytest.fixture
def critical_vault(sample_vault):
    update_vault_debt(sample_vault, 9500.0, 9500.0)
    return sample_vault


@pytest.fixture
def healthy_vault(sample_vault):
    update_vault_debt(sample_vault, 3000.0, 3000.0)
    return sample_vault


class TestMonitorLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, monitor):
        await monitor.start()
        first_task = monitor._monitoring_task
        await monitor.start()

        assert monitor.is_running is True
        assert monitor._monitoring_task is first_task

        await monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, monitor):
        await monitor.start()
        await monitor.stop()
        await monitor.stop()

        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self, monitor):
        await monitor.stop()
        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_housekeeping_updates_counters(self, monitor):
        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        metrics = monitor.get_performance_metrics()
        assert metrics.total_checks >= 1
        assert metrics.error_count == 0
        assert metrics.success_rate == 1.0
        assert metrics.last_check_time is not None

    def test_incremental_mean(self, monitor):
        monitor._record_check(10.0, success=True)
        monitor._record_check(20.0, success=True)
        monitor._record_check(30.0, success=False)

        metrics = monitor.get_performance_metrics()
        assert metrics.total_checks == 3
        assert metrics.error_count == 1
        assert metrics.average_response_time == pytest.approx(20.0)
        assert metrics.success_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_housekeeping_refreshes_market_data(self):
        calls = []

        async def fetch(chain_id):
            calls.append(chain_id)
            return MarketDataUpdate(volatility=1.2, market_sentiment=MarketSentiment.BULLISH)

        monitor = EnhancedRiskMonitor(RiskMonitorConfig(check_interval=10), market_data_source=fetch)
        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert set(monitor.market_data) == {1, 42161, 137}
        assert set(calls) == {1, 42161, 137}
        assert monitor.get_market_data(137).volatility == 1.2
        assert monitor.get_enhanced_risk_summary()["market_overview"]["market_sentiment"] == "BULLISH"

    @pytest.mark.asyncio
    async def test_unavailable_feed_keeps_check_successful(self):
        async def fetch(chain_id):
            if chain_id == 137:
                raise MarketDataError("polygon feed down")
            return {"gas_price": 20.0}

        monitor = EnhancedRiskMonitor(
            RiskMonitorConfig(performance=PerformanceConfig(retry_attempts=1)),
            market_data_source=fetch
        )
        await monitor._perform_enhanced_risk_check()

        assert set(monitor.market_data) == {1, 42161}
        assert monitor.error_collector.error_counts == {"MarketDataError": 1}
        assert monitor.get_performance_metrics().error_count == 0

    @pytest.mark.asyncio
    async def test_failing_check_keeps_loop_running(self):
        async def broken_fetch(chain_id):
            raise KeyError("price")

        monitor = EnhancedRiskMonitor(RiskMonitorConfig(check_interval=10), market_data_source=broken_fetch)
        await monitor.start()
        await asyncio.sleep(0.1)

        assert monitor.is_running is True
        assert not monitor._monitoring_task.done()
        await monitor.stop()

        metrics = monitor.get_performance_metrics()
        assert metrics.total_checks >= 2
        assert metrics.error_count == metrics.total_checks
        assert metrics.success_rate == 0.0
        assert monitor.error_collector.error_counts["KeyError"] == metrics.total_checks
        assert monitor.error_collector.errors[-1]["context"] == {"operation": "housekeeping"}


class TestMonitorVault:

    @pytest.mark.asyncio
    async def test_healthy_vault(self, monitor, healthy_vault, sample_agent):
        result = await monitor.monitor_vault(healthy_vault, sample_agent)

        assert result.risk_metrics.risk_level == RiskLevel.LOW
        assert result.alerts == []
        assert result.protection_triggered is False
        assert result.predictive_metrics.factors == ["Insufficient historical data"]
        assert result.predictive_metrics.confidence == 0.1
        assert result.predictive_metrics.risk_probability == 0.5
        assert result.performance_metrics.data_points == 0
        assert result.performance_metrics.accuracy == pytest.approx(0.1)
        assert monitor.get_performance_metrics().total_checks == 1

    @pytest.mark.asyncio
    async def test_critical_vault_raises_ordered_alerts(self, monitor, critical_vault, sample_agent):
        result = await monitor.monitor_vault(critical_vault, sample_agent)

        assert result.risk_metrics.risk_level == RiskLevel.CRITICAL
        assert result.protection_triggered is True
        assert [a.category for a in result.alerts] == [AlertCategory.LTV, AlertCategory.HEALTH_FACTOR]

        ltv_alert, hf_alert = result.alerts
        assert ltv_alert.type == AlertType.CRITICAL
        assert ltv_alert.severity == AlertSeverity.CRITICAL
        assert ltv_alert.escalation_level == 3
        assert ltv_alert.auto_escalation is True
        assert ltv_alert.message == "LTV 95.00% exceeds critical threshold"
        assert ltv_alert.metadata.threshold == 90.0
        assert hf_alert.message == "Health factor 0.79 below critical threshold"
        assert all(a.id in monitor.alerts for a in result.alerts)

    @pytest.mark.asyncio
    async def test_auto_protection_disabled(self, critical_vault, sample_agent):
        monitor = EnhancedRiskMonitor(RiskMonitorConfig(auto_protection=AutoProtectionConfig(enabled=False)))

        result = await monitor.monitor_vault(critical_vault, sample_agent)

        assert result.protection_triggered is False
        assert result.risk_metrics.risk_level == RiskLevel.CRITICAL
        assert len(result.alerts) == 2

    @pytest.mark.asyncio
    async def test_repeated_breach_creates_new_alerts(self, monitor, critical_vault, sample_agent):
        await monitor.monitor_vault(critical_vault, sample_agent)
        await monitor.monitor_vault(critical_vault, sample_agent)

        assert len(monitor.get_vault_alerts(critical_vault.id)) == 4

    @pytest.mark.asyncio
    async def test_configured_thresholds(self, indebted_vault, sample_agent):
        config = RiskMonitorConfig()
        config.alert_thresholds.ltv_critical = 45.0
        config.alert_thresholds.health_factor_warning = 1.4
        monitor = EnhancedRiskMonitor(config)

        result = await monitor.monitor_vault(indebted_vault, sample_agent)

        assert [a.category for a in result.alerts] == [AlertCategory.LTV]

    @pytest.mark.asyncio
    async def test_market_volatility_applies(self, monitor, indebted_vault, sample_agent):
        monitor.simulate_market_volatility(indebted_vault.chain_id, 2.0)

        result = await monitor.monitor_vault(indebted_vault, sample_agent)

        assert result.vault.max_ltv == pytest.approx(37.6)
        assert result.vault.health_factor == pytest.approx(0.75)
        assert [a.category for a in result.alerts] == [AlertCategory.HEALTH_FACTOR]
        assert result.protection_triggered is True

    @pytest.mark.asyncio
    async def test_unsupported_chain_is_recorded_and_raised(self, monitor, sample_agent):
        vault = create_credit_vault(sample_agent.id, 999, "BNB", 10.0, 3000.0, 50.0)

        with pytest.raises(UnsupportedChainError):
            await monitor.monitor_vault(vault, sample_agent)

        assert monitor.get_performance_metrics().error_count == 1
        assert monitor.error_collector.error_counts == {"UnsupportedChainError": 1}

    @pytest.mark.asyncio
    async def test_monitor_vaults_collects_failures(self, monitor, indebted_vault, sample_agent):
        unsupported = create_credit_vault(sample_agent.id, 999, "BNB", 10.0, 3000.0, 50.0)
        entries = [
            (indebted_vault, sample_agent, []),
            (unsupported, sample_agent, []),
        ]

        results = await monitor.monitor_vaults(entries)

        assert len(results) == 2
        assert results[0].vault.id == indebted_vault.id
        assert isinstance(results[1], UnsupportedChainError)

    @pytest.mark.asyncio
    async def test_monitor_vaults_respects_limit(self, sample_agent):
        monitor = EnhancedRiskMonitor(RiskMonitorConfig(
            performance=PerformanceConfig(max_concurrent_vaults=3, batch_size=2)
        ))
        entries = [
            (create_credit_vault(sample_agent.id, 1, "WETH", 1.0, 3000.0, 70.0), sample_agent, [])
            for _ in range(5)
        ]

        results = await monitor.monitor_vaults(entries)

        assert len(results) == 3
        assert monitor.get_performance_metrics().total_checks == 3


class TestAlertTiers:

    @pytest.fixture
    def ltv_only_monitor(self):
        # Health-factor thresholds low enough that only the LTV dimension fires
        return EnhancedRiskMonitor(RiskMonitorConfig(alert_thresholds=AlertThresholds(
            health_factor_warning=0.5,
            health_factor_alert=0.4,
            health_factor_critical=0.3
        )))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("debt,alert_type,severity,escalation,message,threshold", [
        (7200.0, AlertType.WARNING, AlertSeverity.MEDIUM, 1, "LTV 72.00% approaching alert threshold", 70.0),
        (8500.0, AlertType.ALERT, AlertSeverity.HIGH, 2, "LTV 85.00% exceeds alert threshold", 80.0),
        (9200.0, AlertType.CRITICAL, AlertSeverity.CRITICAL, 3, "LTV 92.00% exceeds critical threshold", 90.0),
    ])
    async def test_ltv_tiers(
        self, ltv_only_monitor, sample_vault, sample_agent, debt, alert_type, severity, escalation, message, threshold
    ):
        update_vault_debt(sample_vault, debt, debt)

        result = await ltv_only_monitor.monitor_vault(sample_vault, sample_agent)

        assert len(result.alerts) == 1
        alert = result.alerts[0]
        assert alert.category == AlertCategory.LTV
        assert alert.type == alert_type
        assert alert.severity == severity
        assert alert.escalation_level == escalation
        assert alert.auto_escalation is (alert_type == AlertType.CRITICAL)
        assert alert.message == message
        assert alert.metadata.threshold == threshold

    @pytest.mark.asyncio
    @pytest.mark.parametrize("debt,alert_type,severity,message", [
        (5200.0, AlertType.WARNING, AlertSeverity.MEDIUM, "Health factor 1.45 approaching alert threshold"),
        (6000.0, AlertType.ALERT, AlertSeverity.HIGH, "Health factor 1.25 below alert threshold"),
    ])
    async def test_health_factor_tiers(self, monitor, sample_vault, sample_agent, debt, alert_type, severity, message):
        update_vault_debt(sample_vault, debt, debt)

        result = await monitor.monitor_vault(sample_vault, sample_agent)

        assert [(a.category, a.type) for a in result.alerts] == [(AlertCategory.HEALTH_FACTOR, alert_type)]
        assert result.alerts[0].severity == severity
        assert result.alerts[0].message == message
        assert result.alerts[0].auto_escalation is False

    @pytest.mark.asyncio
    async def test_warning_at_health_factor_boundary(self, monitor, indebted_vault, sample_agent):
        result = await monitor.monitor_vault(indebted_vault, sample_agent)

        assert indebted_vault.health_factor == 1.5
        assert [(a.category, a.type) for a in result.alerts] == [(AlertCategory.HEALTH_FACTOR, AlertType.WARNING)]
        assert result.alerts[0].metadata.threshold == 1.5

    @pytest.mark.asyncio
    async def test_tiers_are_independent_per_dimension(self, monitor, sample_vault, sample_agent):
        update_vault_debt(sample_vault, 8500.0, 8500.0)

        result = await monitor.monitor_vault(sample_vault, sample_agent)

        assert [(a.category, a.type) for a in result.alerts] == [
            (AlertCategory.LTV, AlertType.ALERT),
            (AlertCategory.HEALTH_FACTOR, AlertType.CRITICAL),
        ]
        summary = monitor.get_enhanced_risk_summary()
        assert summary["alerts_by_severity"] == {"HIGH": 1, "CRITICAL": 1}


class TestPredictiveRiskMetrics:

    def test_projection_with_history(self, monitor, indebted_vault, historical_samples):
        prediction = monitor.calculate_predictive_risk_metrics(indebted_vault, historical_samples)

        assert prediction.predicted_ltv == pytest.approx(50.0)
        assert prediction.predicted_health_factor == pytest.approx(1.5)
        assert prediction.risk_probability == 0.0
        assert prediction.confidence == 1.0
        assert prediction.time_horizon_hours == 24
        assert prediction.factors[0] == "Market volatility: 1.00"
        assert any(f.startswith("LTV trending up") for f in prediction.factors)

    def test_projection_under_stress(self, monitor, indebted_vault, historical_samples):
        monitor.update_market_data(indebted_vault.chain_id, {"volatility_index": 2.0})
        market_data = monitor.get_market_data(indebted_vault.chain_id)

        prediction = monitor.calculate_predictive_risk_metrics(indebted_vault, historical_samples[:5], market_data)

        assert prediction.predicted_ltv == pytest.approx(100.0)
        assert prediction.predicted_health_factor == pytest.approx(0.75)
        assert prediction.risk_probability == pytest.approx(1.0)
        assert prediction.confidence == pytest.approx(0.5)
        assert "Predicted health factor below Ethereum minimum (1.10)" in prediction.factors

    def test_health_factor_floor(self, monitor, indebted_vault, historical_samples):
        indebted_vault.health_factor = 0.05

        prediction = monitor.calculate_predictive_risk_metrics(indebted_vault, historical_samples)

        assert prediction.predicted_health_factor == 0.1

    def test_disabled_analysis_passthrough(self, indebted_vault, historical_samples):
        monitor = EnhancedRiskMonitor(RiskMonitorConfig(
            analytics=AnalyticsConfig(enable_predictive_analysis=False)
        ))

        prediction = monitor.calculate_predictive_risk_metrics(indebted_vault, historical_samples)

        assert prediction.factors == ["Predictive analysis disabled"]
        assert prediction.predicted_ltv == indebted_vault.ltv
        assert prediction.confidence == 0.1


class TestAlertLifecycle:

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, monitor):
        assert monitor.acknowledge_alert("unknown-id", "user") is False

    @pytest.mark.asyncio
    async def test_acknowledge_known_alert(self, monitor, critical_vault, sample_agent):
        result = await monitor.monitor_vault(critical_vault, sample_agent)
        alert_id = result.alerts[0].id

        assert monitor.acknowledge_alert(alert_id, "risk-desk") is True

        alert = monitor.alerts[alert_id]
        assert alert.acknowledged is True
        assert alert.acknowledged_by == "risk-desk"
        assert alert.acknowledged_at is not None
        assert [a.id for a in monitor.get_active_alerts()] == [result.alerts[1].id]
        assert len(monitor.get_all_alerts()) == 2

    @pytest.mark.asyncio
    async def test_acknowledgement_is_terminal(self, monitor, critical_vault, sample_agent):
        result = await monitor.monitor_vault(critical_vault, sample_agent)
        alert_id = result.alerts[0].id
        monitor.acknowledge_alert(alert_id, "first")
        first_stamp = monitor.alerts[alert_id].acknowledged_at

        assert monitor.acknowledge_alert(alert_id, "second") is True
        assert monitor.alerts[alert_id].acknowledged_by == "first"
        assert monitor.alerts[alert_id].acknowledged_at == first_stamp

    @pytest.mark.asyncio
    async def test_acknowledgement_requires_acknowledger(self, monitor, critical_vault, sample_agent):
        result = await monitor.monitor_vault(critical_vault, sample_agent)

        assert monitor.acknowledge_alert(result.alerts[0].id, "") is False
        assert monitor.alerts[result.alerts[0].id].acknowledged is False

    @pytest.mark.asyncio
    async def test_alert_filters(self, monitor, critical_vault, sample_agent):
        await monitor.monitor_vault(critical_vault, sample_agent)

        assert len(monitor.get_alerts_by_category(AlertCategory.LTV)) == 1
        assert len(monitor.get_alerts_by_category(AlertCategory.MARKET_RISK)) == 0
        assert len(monitor.get_alerts_by_severity(AlertSeverity.CRITICAL)) == 2
        assert monitor.get_vault_alerts("vault_other") == []


class TestMarketData:

    def test_partial_updates_merge(self, monitor):
        monitor.update_market_data(1, {"volatility": 1.5, "price_feeds": {"ETH": 2500.0}})
        monitor.update_market_data(1, MarketDataUpdate(gas_price=30.0, market_sentiment=MarketSentiment.BEARISH))

        market_data = monitor.get_market_data(1)
        assert market_data.volatility == 1.5
        assert market_data.gas_price == 30.0
        assert market_data.price_feeds == {"ETH": 2500.0}
        assert market_data.market_sentiment == MarketSentiment.BEARISH

    def test_simulated_volatility_sets_both_fields(self, monitor):
        monitor.simulate_market_volatility(137, 1.8)

        market_data = monitor.get_market_data(137)
        assert market_data.volatility == 1.8
        assert market_data.volatility_index == 1.8

    def test_price_update_requires_existing_data(self, monitor):
        monitor.simulate_price_update(42161, "ARB", 1.2)
        assert monitor.get_market_data(42161) is None

        monitor.simulate_market_volatility(42161, 1.0)
        monitor.simulate_price_update(42161, "ARB", 1.2)
        assert monitor.get_market_data(42161).price_feeds == {"ARB": 1.2}


class TestReporting:

    @pytest.mark.asyncio
    async def test_risk_summary(self, monitor, critical_vault, sample_agent, weak_agent):
        other = create_credit_vault(weak_agent.id, 1, "WETH", 1.0, 3000.0, 68.0)
        monitor.update_market_data(1, {"volatility_index": 1.4, "market_sentiment": MarketSentiment.BULLISH})

        await monitor.monitor_vault(critical_vault, sample_agent)
        await monitor.monitor_vault(other, weak_agent)

        summary = monitor.get_enhanced_risk_summary()
        assert summary["total_vaults"] == 2
        assert summary["critical_risk"] == 1
        assert summary["low_risk"] == 1
        assert summary["total_alerts"] == 2
        assert summary["unacknowledged_alerts"] == 2
        assert summary["alerts_by_category"] == {"LTV": 1, "HEALTH_FACTOR": 1}
        assert summary["alerts_by_severity"] == {"CRITICAL": 2}
        assert summary["market_overview"] == {
            "total_chains": 1,
            "average_volatility": pytest.approx(1.4),
            "market_sentiment": "BULLISH"
        }

    def test_empty_summary(self, monitor):
        summary = monitor.get_enhanced_risk_summary()

        assert summary["total_vaults"] == 0
        assert summary["market_overview"]["market_sentiment"] == "NEUTRAL"

    @pytest.mark.asyncio
    async def test_status(self, monitor, critical_vault, sample_agent):
        await monitor.monitor_vault(critical_vault, sample_agent)

        status = monitor.get_enhanced_status()
        assert status["is_running"] is False
        assert status["alerts_count"] == 2
        assert status["vault_metrics_history_count"] == 1
        assert status["market_data_count"] == 0
        assert status["error_summary"]["total_errors"] == 0
        assert status["last_check"] is not None
