from __future__ import annotations

import logging
from datetime import timedelta

from rq_scheduler import Scheduler

from stablepay.core.config import settings
from stablepay.services.task_queue import CHECK_CONDITIONS_FUNC, CONDITION_CHECK_QUEUE, CONDITION_SCHEDULE_ID, DLQ_QUEUE, TaskQueue

logger = logging.getLogger("stablepay.jobs.schedule_registry")

CLEANUP_DLQ_FUNC = "stablepay.jobs.maintenance.cleanup_dlq_job"
DLQ_CLEANUP_SCHEDULE_ID = "maintenance:cleanup-dlq"


def _schedule_entries() -> list[dict]:
    interval_minutes = max(1, settings.condition_check_interval_seconds // 60)
    return [
        {
            "id": CONDITION_SCHEDULE_ID,
            "func": CHECK_CONDITIONS_FUNC,
            "cron": f"*/{interval_minutes} * * * *",
            "queue_name": CONDITION_CHECK_QUEUE,
        },
        {
            "id": DLQ_CLEANUP_SCHEDULE_ID,
            "func": CLEANUP_DLQ_FUNC,
            "cron": settings.dlq_cleanup_cron,
            "queue_name": DLQ_QUEUE,
        },
    ]


def ensure_schedules(task_queue: TaskQueue, scheduler: Scheduler | None = None) -> list[str]:
    """Idempotently register periodic jobs with rq-scheduler; returns the ids added."""
    if settings.environment.lower() == "test" and scheduler is None:
        return []
    if not task_queue.connection or not task_queue.is_queue_healthy():
        logger.info("Skipping scheduler bootstrap; queue connection is unavailable")
        return []
    scheduler = scheduler or Scheduler(connection=task_queue.connection, queue_name=CONDITION_CHECK_QUEUE)
    added: list[str] = []
    for entry in _schedule_entries():
        if entry["id"] in scheduler:
            continue
        scheduler.cron(
            entry["cron"],
            func=entry["func"],
            id=entry["id"],
            queue_name=entry["queue_name"],
            repeat=None,
            result_ttl=int(timedelta(hours=1).total_seconds()),
            use_local_timezone=False,
        )
        added.append(entry["id"])
        logger.info("Scheduled job %s (%s) on queue %s", entry["id"], entry["cron"], entry["queue_name"])
    return added
