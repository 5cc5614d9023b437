"""Admin endpoints for system health, alerting, safety policy, and the dead-letter queue.

Invariants:
- Every admin action only touches the safety, alerting, or DLQ subsystems.
- DLQ endpoints answer 503 while the broker is unavailable instead of guessing.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.exceptions import RedisError

from stablepay.api.deps import get_services, require_admin
from stablepay.container import ServiceContainer
from stablepay.core.config import settings
from stablepay.schema.ops import DLQAction, HealthAction
from stablepay.services.audit_log import Severity
from stablepay.services.dlq import DeadLetterQueue

logger = logging.getLogger("stablepay.api.admin")

router = APIRouter(dependencies=[Depends(require_admin)])


def _dlq_or_503(services: ServiceContainer) -> DeadLetterQueue:
    dlq = services.dlq
    if dlq is None or not services.task_queue.is_queue_healthy():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="DLQ not available")
    return dlq


@router.get("/health")
async def system_health(services: ServiceContainer = Depends(get_services)) -> dict:
    """Metrics, recent alerts, DLQ summary, and safety state for the admin dashboard."""
    metrics = await services.monitoring.collect_metrics()
    alerts = services.monitoring.get_alerts(20)
    unresolved = [alert for alert in alerts if not alert.resolved]

    dlq_details = None
    if services.dlq is not None and services.task_queue.is_queue_healthy():
        try:
            page = services.dlq.get_entries(0, 10)
            dlq_details = {
                "recent_entries": [entry.model_dump() for entry in page["entries"]],
                "stats": services.dlq.get_stats(),
            }
        except RedisError as exc:
            logger.warning("Could not fetch DLQ details: %s", exc)

    health = services.safety.get_system_health()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "metrics": metrics,
        "alerts": {
            "total": len(alerts),
            "unresolved": len(unresolved),
            "recent": [asdict(alert) for alert in alerts[:10]],
        },
        "dlq": dlq_details,
        "safety": {
            "is_system_safe": services.safety.is_system_safe(),
            "policy": asdict(services.safety.policy),
        },
        "system_info": {
            "python_version": platform.python_version(),
            "platform": platform.platform(),
            "uptime": round(health.uptime),
            "environment": settings.environment,
            "queue_mode": services.task_queue.mode,
        },
    }


@router.post("/health")
async def health_action(payload: HealthAction, services: ServiceContainer = Depends(get_services)) -> dict:
    monitoring = services.monitoring
    if payload.action == "resolve-alert":
        return {"success": monitoring.resolve_alert(payload.alert_id)}

    if payload.action == "update-alert-rule":
        try:
            updated = monitoring.update_alert_rule(payload.rule_id, payload.updates)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return {"success": updated}

    if payload.action == "reset-circuit-breakers":
        services.safety.reset_all_circuit_breakers()
        services.audit.log_event("circuit_breakers_reset", category="ADMIN", severity=Severity.HIGH)
        return {"success": True, "message": "All circuit breakers reset"}

    try:
        policy = services.safety.update_policy(payload.updates)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    services.audit.log_event(
        "safety_policy_updated", category="ADMIN", severity=Severity.HIGH, updates=payload.updates
    )
    return {"success": True, "message": "Safety policy updated", "policy": asdict(policy)}


@router.get("/dlq")
async def list_dlq(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    queue: str | None = None,
    can_retry: bool | None = None,
    user_id: str | None = None,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    dlq = _dlq_or_503(services)
    page = dlq.get_entries(offset, limit, queue=queue, can_retry=can_retry, user_id=user_id)
    return {
        "entries": [entry.model_dump() for entry in page["entries"]],
        "total": page["total"],
        "offset": offset,
        "limit": limit,
        "stats": dlq.get_stats(),
    }


@router.post("/dlq")
async def dlq_action(payload: DLQAction, services: ServiceContainer = Depends(get_services)) -> dict:
    dlq = _dlq_or_503(services)

    if payload.action in ("retry-job", "remove-job") and not payload.dlq_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="dlq_id is required")

    if payload.action == "retry-job":
        result = dlq.retry_job(
            payload.dlq_id,
            delay_ms=payload.delay_ms,
            priority=payload.priority,
            remove_from_dlq=payload.remove_from_dlq,
        )
        services.audit.log_event(
            "dlq_retry", category="ADMIN", severity=Severity.MEDIUM, resource="dlq", resource_id=payload.dlq_id,
            success=result.success,
        )
        return asdict(result)

    if payload.action == "remove-job":
        return {"success": dlq.remove(payload.dlq_id)}

    if payload.action == "batch-retry":
        criteria = payload.criteria
        outcome = dlq.batch_retry(
            queue=criteria.queue,
            error_pattern=criteria.error_pattern,
            max_age_hours=criteria.max_age_hours,
            limit=payload.limit,
        )
        return {"success": True, **outcome}

    removed = dlq.cleanup_old_entries(payload.older_than_days)
    return {"success": True, "removed": removed}
