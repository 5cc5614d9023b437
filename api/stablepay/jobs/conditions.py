"""Periodic condition evaluation job."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from stablepay.container import get_container
from stablepay.db.session import engine

logger = logging.getLogger("stablepay.jobs.conditions")


def check_conditions_job() -> dict[str, Any]:
    async def _run() -> dict[str, Any]:
        container = get_container()
        # Reads the shared feed and enqueues triggers only once the broker answers.
        container.task_queue.bootstrap()
        try:
            return await container.condition_checker.check_all_conditions()
        finally:
            await engine.dispose()

    summary = asyncio.run(_run())
    logger.info(
        "Checked %d conditional rules: %d triggered, %d debounced, %d errors",
        summary["rules_checked"],
        len(summary["triggered"]),
        len(summary["debounced"]),
        len(summary["errors"]),
    )
    return summary
