"""System metrics, request performance tracking, and threshold alerting.

Invariants:
- Alert rules fire at most once per cooldown window.
- Resolving an alert is idempotent; resolving twice keeps the first ``resolved_at``.
- Metric collection never raises; failed sections degrade to zeroed values.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Literal

from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stablepay.core.logging_config import log_event
from stablepay.models import Execution, ExecutionStatus, Rule, RuleStatus
from stablepay.safety.controller import SafetyController
from stablepay.services.task_queue import TaskQueue
from stablepay.utils.datetime import start_of_day, utcnow

logger = logging.getLogger("stablepay.services.monitoring")

AlertSeverity = Literal["low", "medium", "high", "critical"]
Comparison = Literal["gt", "lt", "eq"]

_HEALTH_SCORES = {"critical": 0, "degraded": 1, "healthy": 2}
MAX_ALERTS = 1000


class RequestStats:
    """Rolling one-minute window of HTTP request latency and status codes."""

    def __init__(self, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window_seconds
        self._clock = clock
        self._samples: deque[tuple[float, float, int]] = deque()
        self.in_flight = 0

    def started(self) -> None:
        self.in_flight += 1

    def finished(self, duration_ms: float, status_code: int) -> None:
        self.in_flight = max(self.in_flight - 1, 0)
        self._samples.append((self._clock(), duration_ms, status_code))
        self._prune()

    def _prune(self) -> None:
        cutoff = self._clock() - self._window
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def snapshot(self) -> dict[str, float | int]:
        self._prune()
        total = len(self._samples)
        if not total:
            return {"avg_response_time": 0.0, "error_rate": 0.0, "throughput": 0, "active_connections": self.in_flight}
        errors = sum(1 for _, _, status in self._samples if status >= 500)
        return {
            "avg_response_time": round(sum(duration for _, duration, _ in self._samples) / total, 2),
            "error_rate": round(errors / total * 100, 2),
            "throughput": round(total * 60 / self._window),
            "active_connections": self.in_flight,
        }


@dataclass
class AlertRule:
    id: str
    name: str
    metric: str
    condition: Comparison
    threshold: float
    severity: AlertSeverity
    enabled: bool = True
    cooldown_minutes: int = 15
    last_triggered: datetime | None = None


@dataclass
class Alert:
    id: str
    rule_id: str
    message: str
    severity: AlertSeverity
    timestamp: datetime
    resolved: bool = False
    resolved_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def default_alert_rules() -> list[AlertRule]:
    return [
        AlertRule("high-error-rate", "High Error Rate", "performance.error_rate", "gt", 5, "high", cooldown_minutes=15),
        AlertRule("system-critical", "System Critical Health", "health.overall", "eq", 0, "critical", cooldown_minutes=5),
        AlertRule(
            "high-dlq-entries", "High DLQ Entries", "infrastructure.dlq.total_entries", "gt", 100, "medium", cooldown_minutes=30
        ),
        AlertRule(
            "slow-database",
            "Slow Database Performance",
            "infrastructure.database.query_time",
            "gt",
            1000,
            "medium",
            cooldown_minutes=10,
        ),
    ]


def metric_value(metrics: dict[str, Any], path: str) -> float:
    value: Any = metrics
    for key in path.split("."):
        value = value.get(key) if isinstance(value, dict) else None
    if path == "health.overall":
        return _HEALTH_SCORES.get(value, 0)
    return float(value) if isinstance(value, (int, float, Decimal)) else 0.0


def compare(value: float, condition: Comparison, threshold: float) -> bool:
    if condition == "gt":
        return value > threshold
    if condition == "lt":
        return value < threshold
    if condition == "eq":
        return value == threshold
    return False


class MonitoringService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        safety: SafetyController,
        task_queue: TaskQueue,
        *,
        request_stats: RequestStats | None = None,
        rules: list[AlertRule] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._safety = safety
        self._task_queue = task_queue
        self.request_stats = request_stats or RequestStats()
        self._rules = {rule.id: rule for rule in (rules if rules is not None else default_alert_rules())}
        self._alerts: list[Alert] = []
        self._clock = clock

    async def collect_metrics(self) -> dict[str, Any]:
        health = self._safety.get_system_health()
        metrics = {
            "health": {
                "overall": health.overall,
                "services": health.services,
                "uptime": health.uptime,
                "timestamp": self._clock().isoformat(),
            },
            "performance": self.request_stats.snapshot(),
            "business": await self._business_metrics(),
            "infrastructure": {
                "database": await self._database_metrics(),
                "redis": self._queue_metrics(),
                "dlq": self._dlq_metrics(),
            },
        }
        self.check_alert_rules(metrics)
        return metrics

    async def _business_metrics(self) -> dict[str, Any]:
        now = self._clock()
        today = start_of_day(now)
        week_ago = now - timedelta(days=7)
        try:
            async with self._session_factory() as session:
                active_rules = await session.scalar(
                    select(func.count()).select_from(Rule).where(Rule.status == RuleStatus.ACTIVE)
                )
                executions_today = await session.scalar(
                    select(func.count()).select_from(Execution).where(Execution.created_at >= today)
                )
                volume = await session.scalar(
                    select(func.coalesce(func.sum(Execution.amount_usd), 0)).where(
                        Execution.created_at >= today, Execution.status == ExecutionStatus.COMPLETED
                    )
                )
                week_rows = await session.execute(
                    select(Execution.status, func.count())
                    .where(Execution.created_at >= week_ago)
                    .group_by(Execution.status)
                )
                by_status = {status: count for status, count in week_rows.all()}
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to collect business metrics: %s", exc)
            return {"active_rules": 0, "executions_today": 0, "total_volume_usd": 0.0, "success_rate": 0.0}
        total = sum(by_status.values())
        completed = by_status.get(ExecutionStatus.COMPLETED, 0)
        return {
            "active_rules": active_rules or 0,
            "executions_today": executions_today or 0,
            "total_volume_usd": float(volume or 0),
            "success_rate": round(completed / total * 100, 2) if total else 100.0,
        }

    async def _database_metrics(self) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            logger.error("Database health query failed: %s", exc)
            return {"connections": 0, "query_time": round((time.perf_counter() - started) * 1000, 2), "status": "critical"}
        query_time = round((time.perf_counter() - started) * 1000, 2)
        status = "healthy" if query_time < 100 else "degraded" if query_time < 1000 else "critical"
        return {"connections": 1, "query_time": query_time, "status": status}

    def _queue_metrics(self) -> dict[str, Any]:
        status = self._task_queue.get_queue_status()
        return {
            "status": "healthy" if status["healthy"] else "critical",
            "mode": status["mode"],
            "queue_size": status["durable_jobs"],
            "failed_jobs": status["fallback"]["failed"],
        }

    def _dlq_metrics(self) -> dict[str, Any]:
        dlq = self._task_queue.dlq
        empty = {"total_entries": 0, "retryable_entries": 0, "entries_by_queue": {}}
        if dlq is None or not self._task_queue.is_queue_healthy():
            return empty
        try:
            stats = dlq.get_stats()
        except RedisError as exc:
            logger.warning("DLQ stats unavailable: %s", exc)
            return empty
        return {
            "total_entries": stats["total_entries"],
            "retryable_entries": stats["retryable_entries"],
            "entries_by_queue": stats["entries_by_queue"],
        }

    def check_alert_rules(self, metrics: dict[str, Any]) -> list[Alert]:
        now = self._clock()
        fired: list[Alert] = []
        for rule in self._rules.values():
            if not rule.enabled:
                continue
            if rule.last_triggered and now - rule.last_triggered < timedelta(minutes=rule.cooldown_minutes):
                continue
            value = metric_value(metrics, rule.metric)
            if compare(value, rule.condition, rule.threshold):
                fired.append(self._trigger(rule, value, now))
        return fired

    def _trigger(self, rule: AlertRule, value: float, now: datetime) -> Alert:
        alert = Alert(
            id=f"alert_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            rule_id=rule.id,
            message=f"{rule.name}: {rule.metric} is {value:g} (threshold: {rule.threshold:g})",
            severity=rule.severity,
            timestamp=now,
            metadata={"metric": rule.metric, "value": value, "threshold": rule.threshold, "condition": rule.condition},
        )
        self._alerts = (self._alerts + [alert])[-MAX_ALERTS:]
        rule.last_triggered = now
        log_event(logger, "alert_triggered", level=logging.WARNING, alert_id=alert.id, rule_id=rule.id, message=alert.message)
        return alert

    def get_alerts(self, limit: int = 50, resolved: bool | None = None) -> list[Alert]:
        alerts = self._alerts if resolved is None else [a for a in self._alerts if a.resolved == resolved]
        return sorted(alerts, key=lambda alert: alert.timestamp, reverse=True)[:limit]

    def resolve_alert(self, alert_id: str | None) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                if not alert.resolved:
                    alert.resolved = True
                    alert.resolved_at = self._clock()
                    log_event(logger, "alert_resolved", alert_id=alert_id)
                return True
        return False

    def update_alert_rule(self, rule_id: str | None, updates: dict[str, Any]) -> bool:
        rule = self._rules.get(rule_id or "")
        if rule is None:
            return False
        editable = {item.name for item in fields(AlertRule)} - {"id", "last_triggered"}
        unknown = set(updates) - editable
        if unknown:
            raise ValueError(f"Unknown alert rule fields: {', '.join(sorted(unknown))}")
        for key, value in updates.items():
            setattr(rule, key, value)
        log_event(logger, "alert_rule_updated", rule_id=rule_id, updates=updates)
        return True

    def get_alert_rules(self) -> list[dict[str, Any]]:
        return [asdict(rule) for rule in self._rules.values()]
