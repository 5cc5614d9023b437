from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from stablepay.models import Execution, ExecutionStatus
from stablepay.safety.controller import CIRCLE_API, SafetyController
from stablepay.services.monitoring import AlertRule, MonitoringService, RequestStats, compare, metric_value
from stablepay.services.task_queue import TaskQueue


async def _trip(safety: SafetyController, service: str) -> None:
    async def _down():
        raise ConnectionError("provider down")

    for _ in range(safety.breaker(service).config.failure_threshold):
        with pytest.raises(ConnectionError):
            await safety.execute_with_protection(service, _down)


@pytest.fixture()
def safety(ticker) -> SafetyController:
    return SafetyController(clock=ticker, health_cache_seconds=0)


@pytest.fixture()
def monitoring(session_factory, safety, clock, ticker) -> MonitoringService:
    return MonitoringService(
        session_factory,
        safety,
        TaskQueue(),
        request_stats=RequestStats(clock=ticker),
        clock=clock,
    )


def test_request_stats_window(ticker):
    stats = RequestStats(window_seconds=60, clock=ticker)
    stats.started()
    stats.finished(100, 200)
    stats.started()
    stats.finished(300, 503)
    stats.started()

    snapshot = stats.snapshot()
    assert snapshot == {"avg_response_time": 200.0, "error_rate": 50.0, "throughput": 2, "active_connections": 1}

    ticker.advance(61)
    assert stats.snapshot()["throughput"] == 0


def test_metric_paths_and_comparisons():
    metrics = {"health": {"overall": "degraded"}, "infrastructure": {"dlq": {"total_entries": 7}}}
    assert metric_value(metrics, "health.overall") == 1
    assert metric_value(metrics, "infrastructure.dlq.total_entries") == 7
    assert metric_value(metrics, "performance.error_rate") == 0
    assert compare(6, "gt", 5) and compare(4, "lt", 5) and compare(0, "eq", 0)


@pytest.mark.asyncio
async def test_collect_metrics_reports_business_volume(monitoring, make_rule, bodies, session_factory, clock):
    rule = await make_rule(bodies.schedule())
    async with session_factory() as session:
        for key, status, amount in (
            ("a", ExecutionStatus.COMPLETED, "50"),
            ("b", ExecutionStatus.COMPLETED, "25.5"),
            ("c", ExecutionStatus.FAILED, "40"),
        ):
            session.add(
                Execution(
                    rule_id=rule.id,
                    idempotency_key=key,
                    status=status,
                    amount_usd=Decimal(amount),
                    created_at=clock() - timedelta(hours=1),
                )
            )
        await session.commit()

    metrics = await monitoring.collect_metrics()

    business = metrics["business"]
    assert business["active_rules"] == 1
    assert business["executions_today"] == 3
    assert business["total_volume_usd"] == pytest.approx(75.5)
    assert business["success_rate"] == pytest.approx(66.67)
    assert metrics["health"]["overall"] == "healthy"
    assert metrics["infrastructure"]["database"]["connections"] == 1
    assert metrics["infrastructure"]["redis"]["mode"] == "fallback"
    assert metrics["infrastructure"]["dlq"]["total_entries"] == 0


@pytest.mark.asyncio
async def test_critical_health_fires_alert_once_per_cooldown(monitoring, safety, clock):
    await _trip(safety, CIRCLE_API)

    await monitoring.collect_metrics()
    await monitoring.collect_metrics()
    alerts = monitoring.get_alerts()
    assert [alert.rule_id for alert in alerts] == ["system-critical"]
    assert alerts[0].severity == "critical"

    clock.advance(minutes=6)
    await monitoring.collect_metrics()
    assert len(monitoring.get_alerts()) == 2


def test_resolving_alert_is_idempotent(monitoring, clock):
    monitoring.update_alert_rule("high-dlq-entries", {"threshold": 1})
    [alert] = monitoring.check_alert_rules(
        {"health": {"overall": "healthy"}, "infrastructure": {"dlq": {"total_entries": 5}}}
    )

    assert monitoring.resolve_alert(alert.id) is True
    resolved_at = alert.resolved_at
    clock.advance(minutes=1)
    assert monitoring.resolve_alert(alert.id) is True
    assert alert.resolved_at == resolved_at
    assert monitoring.resolve_alert("missing") is False
    assert monitoring.get_alerts(resolved=False) == []


def test_alert_rule_updates_are_validated(monitoring):
    assert monitoring.update_alert_rule("slow-database", {"enabled": False, "cooldown_minutes": 1}) is True
    assert monitoring.update_alert_rule("nope", {"enabled": False}) is False
    with pytest.raises(ValueError):
        monitoring.update_alert_rule("slow-database", {"last_triggered": None})

    rules = {rule["id"]: rule for rule in monitoring.get_alert_rules()}
    assert rules["slow-database"]["enabled"] is False
    assert rules["slow-database"]["cooldown_minutes"] == 1


def test_disabled_rule_never_fires(session_factory, safety, clock):
    rule = AlertRule("always", "Always", "performance.error_rate", "eq", 0, "low", enabled=False)
    service = MonitoringService(session_factory, safety, TaskQueue(), rules=[rule], clock=clock)
    assert service.check_alert_rules({"performance": {"error_rate": 0}}) == []
