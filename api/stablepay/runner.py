"""Long-running producer process: cron ticks, FX refresh, condition dispatch, broker probe.

Run with ``python -m stablepay.runner``. SIGINT/SIGTERM stop every loop after
its current iteration.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable

from stablepay.container import ServiceContainer, get_container
from stablepay.core.config import settings
from stablepay.core.logging_config import configure_logging
from stablepay.db.session import engine
from stablepay.jobs.schedule_registry import ensure_schedules

logger = logging.getLogger("stablepay.runner")


async def run_every(
    name: str, interval: float, operation: Callable[[], Awaitable[Any]], stop: asyncio.Event
) -> None:
    """Await ``operation`` every ``interval`` seconds until ``stop`` is set; errors are logged."""
    while not stop.is_set():
        try:
            await operation()
        except Exception:  # noqa: BLE001
            logger.exception("Periodic task %s failed", name)
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def _probe_and_register(container: ServiceContainer) -> None:
    was_durable = container.task_queue.is_queue_healthy()
    await container.task_queue.probe()
    if container.task_queue.is_queue_healthy() and not was_durable:
        await asyncio.to_thread(ensure_schedules, container.task_queue)


async def serve(container: ServiceContainer, stop: asyncio.Event) -> None:
    container.task_queue.bootstrap()
    ensure_schedules(container.task_queue)
    await asyncio.gather(
        container.scheduler.run(stop),
        run_every("fx-refresh", settings.fx_refresh_interval_seconds, container.condition_checker.refresh_rates, stop),
        run_every(
            "condition-check",
            settings.condition_check_interval_seconds,
            container.task_queue.add_condition_check_job,
            stop,
        ),
        run_every("queue-probe", settings.queue_probe_interval_seconds, lambda: _probe_and_register(container), stop),
    )


async def _main() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)
    container = get_container()
    logger.info("Runner starting (queue mode: %s)", container.task_queue.mode)
    try:
        await serve(container, stop)
    finally:
        await engine.dispose()
        logger.info("Runner stopped")


def main() -> None:
    configure_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
