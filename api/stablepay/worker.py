from __future__ import annotations

import logging
import os
from typing import Any, Callable

from redis import Redis
from rq import Queue, Worker
from rq.job import Job

from stablepay.core.config import settings
from stablepay.core.errors import is_retryable
from stablepay.core.logging_config import configure_logging
from stablepay.services.dlq import DeadLetterQueue

logger = logging.getLogger("stablepay.worker")


def _queue_objects(connection: Redis) -> list[Queue]:
    return [Queue(name, connection=connection) for name in settings.worker_queue_names]


def build_dlq_handler(dlq: DeadLetterQueue) -> Callable[..., bool]:
    """RQ exception handler that dead-letters terminal failures.

    A failure is terminal once RQ has no retries left for the job or the error
    is tagged non-retryable. A job is dead-lettered at most once; attempts RQ
    had already scheduled are only counted. Returning True lets the default
    handlers run too.
    """

    def _handle(job: Job, exc_type: type[BaseException], exc_value: BaseException, tb: Any) -> bool:
        attempts = int(job.meta.get("attempts", 0)) + 1
        job.meta["attempts"] = attempts
        job.save_meta()
        if job.meta.get("dead_lettered"):
            logger.info("Job %s failed again (attempt %d) after dead-lettering: %s", job.id, attempts, exc_value)
            return True
        if not job.is_failed and is_retryable(exc_value):
            logger.info("Job %s failed (attempt %d); RQ will retry: %s", job.id, attempts, exc_value)
            return True
        queue_name = job.origin
        metadata = {key: value for key, value in job.meta.items() if key in ("rule_id", "user_id", "priority")}
        try:
            dlq.add(queue_name, dict(job.kwargs or {}), exc_value, attempts, metadata)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to dead-letter job %s: %s", job.id, exc)
            return True
        job.meta["dead_lettered"] = True
        job.save_meta()
        return True

    return _handle


def main() -> None:
    configure_logging()
    redis_connection = Redis.from_url(settings.redis_url)
    queues = _queue_objects(redis_connection)
    if not queues:
        logger.error("No worker queues configured; set WORKER_QUEUE_NAMES or rely on the default.")
        return
    logger.info("Starting worker for queues: %s", ", ".join(settings.worker_queue_names))
    worker = Worker(
        queues,
        connection=redis_connection,
        name=f"stablepay-worker-{os.getpid()}",
        exception_handlers=[build_dlq_handler(DeadLetterQueue(redis_connection))],
    )
    try:
        worker.work(with_scheduler=True)
    except KeyboardInterrupt:
        worker.request_stop(None, None)
        logger.info("Worker shutdown requested")


if __name__ == "__main__":
    main()
