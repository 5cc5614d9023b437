"""Execute-rule job run by RQ workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from stablepay.container import get_container
from stablepay.db.session import engine
from stablepay.services.task_queue import ExecutionJob

logger = logging.getLogger("stablepay.jobs.execution")


def execute_rule_job(
    rule_id: str,
    idempotency_key: str,
    triggered_by: str = "schedule",
    scheduled_for: str | None = None,
) -> dict[str, Any]:
    """Run the execution pipeline for one rule occurrence.

    Errors propagate so RQ applies the job's retry profile and the worker's
    exception handler can route terminal failures to the DLQ.
    """
    job = ExecutionJob(
        rule_id=rule_id,
        idempotency_key=idempotency_key,
        triggered_by=triggered_by,
        scheduled_for=scheduled_for,
    )

    async def _run() -> dict[str, Any]:
        try:
            return await get_container().engine.process_job(job)
        finally:
            # Pooled connections are bound to this event loop.
            await engine.dispose()

    result = asyncio.run(_run())
    logger.info("Rule %s job %s finished with status %s", rule_id, idempotency_key, result.get("status"))
    return result
