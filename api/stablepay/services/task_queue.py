"""RQ-backed job queue with an inline fallback when Redis is unavailable.

Two dispatchers implement the same interface: ``BrokerDispatcher`` enqueues
onto RQ, ``InlineDispatcher`` runs the registered handler in the calling
coroutine. ``TaskQueue`` swaps between them on connection events.

Invariants:
- Durable execution jobs use the idempotency key as the RQ job id, so a second
  enqueue of the same key is reported as a duplicate instead of queued.
- A broker error during enqueue switches later calls to fallback mode; the
  failing call itself is not replayed inline.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from rq.registry import DeferredJobRegistry, FailedJobRegistry, ScheduledJobRegistry, StartedJobRegistry
from rq.job import Retry
from rq.worker import Worker

from stablepay.core.config import settings
from stablepay.core.logging_config import log_event

if TYPE_CHECKING:
    from stablepay.services.dlq import DeadLetterQueue

logger = logging.getLogger("stablepay.services.task_queue")

EXECUTE_RULE_QUEUE = "execute-rule"
CONDITION_CHECK_QUEUE = "condition-check"
DLQ_QUEUE = "dlq"

EXECUTE_RULE_FUNC = "stablepay.jobs.execution.execute_rule_job"
CHECK_CONDITIONS_FUNC = "stablepay.jobs.conditions.check_conditions_job"
CONDITION_SCHEDULE_ID = "conditions:check-all"

DURABLE = "durable"
FALLBACK = "fallback"


def build_retry(attempts: int, backoff_seconds: float) -> Retry | None:
    """Exponential retry profile: ``attempts`` total runs, first delay ``backoff_seconds``."""
    retries = max(attempts - 1, 0)
    if not retries:
        return None
    return Retry(max=retries, interval=[max(1, round(backoff_seconds * 2**step)) for step in range(retries)])


@dataclass(frozen=True)
class ExecutionJob:
    """Payload of an execute-rule job."""

    rule_id: str
    idempotency_key: str
    triggered_by: str = "schedule"
    scheduled_for: str | None = None

    def to_kwargs(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class JobDescriptor:
    id: str
    name: str
    queue: str
    mode: str
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InlineStats:
    executed: int = 0
    failed: int = 0
    condition_checks: int = 0


Handler = Callable[..., Awaitable[dict[str, Any]]]
FailureHook = Callable[[str, dict[str, Any], BaseException, dict[str, Any]], Any]


class InlineDispatcher:
    """Runs jobs in-process; no retry or backoff for these invocations."""

    mode = FALLBACK

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self.on_failure: FailureHook | None = None
        self.stats = InlineStats()

    def register(self, queue_name: str, handler: Handler) -> None:
        self._handlers[queue_name] = handler

    def _handler(self, queue_name: str) -> Handler:
        try:
            return self._handlers[queue_name]
        except KeyError:
            raise RuntimeError(f"No inline handler registered for {queue_name}") from None

    async def dispatch_execution(self, job: ExecutionJob, *, delay_seconds: float = 0, priority: int | None = None) -> JobDescriptor:
        handler = self._handler(EXECUTE_RULE_QUEUE)
        if delay_seconds:
            logger.info("Inline mode ignores delay of %ss for %s", delay_seconds, job.idempotency_key)
        descriptor = JobDescriptor(
            id=f"inline-{job.idempotency_key}", name=EXECUTE_RULE_QUEUE, queue=EXECUTE_RULE_QUEUE, mode=self.mode, status="completed"
        )
        try:
            descriptor.result = await handler(job)
        except Exception as exc:  # noqa: BLE001
            self.stats.failed += 1
            descriptor.status = "failed"
            descriptor.error = str(exc)
            if self.on_failure:
                self.on_failure(EXECUTE_RULE_QUEUE, job.to_kwargs(), exc, {"rule_id": job.rule_id, "attempts": 1})
            return descriptor
        self.stats.executed += 1
        if descriptor.result and descriptor.result.get("status") == "duplicate":
            descriptor.status = "duplicate"
        return descriptor

    async def dispatch_condition_check(self) -> JobDescriptor:
        handler = self._handler(CONDITION_CHECK_QUEUE)
        result = await handler()
        self.stats.condition_checks += 1
        return JobDescriptor(
            id=f"inline-check-{uuid.uuid4().hex[:8]}",
            name=CONDITION_CHECK_QUEUE,
            queue=CONDITION_CHECK_QUEUE,
            mode=self.mode,
            status="completed",
            result=result,
        )


class BrokerDispatcher:
    """Enqueues jobs onto RQ queues backed by Redis."""

    mode = DURABLE

    def __init__(
        self,
        connection: Redis,
        *,
        queue_factory: Callable[[str], Queue] | None = None,
        scheduler_factory: Callable[[], Any] | None = None,
        attempts: int | None = None,
        backoff_seconds: float | None = None,
        job_timeout: int | None = None,
    ) -> None:
        self.connection = connection
        self._queue_factory = queue_factory or (lambda name: Queue(name, connection=connection))
        self._scheduler_factory = scheduler_factory or self._default_scheduler
        self._retry = build_retry(
            settings.job_attempts if attempts is None else attempts,
            settings.job_backoff_seconds if backoff_seconds is None else backoff_seconds,
        )
        self._job_timeout = job_timeout or settings.job_timeout_seconds

    def _default_scheduler(self) -> Any:
        from rq_scheduler import Scheduler

        return Scheduler(connection=self.connection, queue_name=CONDITION_CHECK_QUEUE)

    def queue(self, name: str) -> Queue:
        return self._queue_factory(name)

    async def dispatch_execution(self, job: ExecutionJob, *, delay_seconds: float = 0, priority: int | None = None) -> JobDescriptor:
        def _enqueue() -> JobDescriptor:
            queue = self.queue(EXECUTE_RULE_QUEUE)
            descriptor = JobDescriptor(
                id=job.idempotency_key, name=EXECUTE_RULE_QUEUE, queue=EXECUTE_RULE_QUEUE, mode=self.mode, status="queued"
            )
            if queue.fetch_job(job.idempotency_key) is not None:
                descriptor.status = "duplicate"
                return descriptor
            options: dict[str, Any] = {
                "kwargs": job.to_kwargs(),
                "job_id": job.idempotency_key,
                "job_timeout": self._job_timeout,
                "description": f"execute-rule:{job.rule_id}",
                "meta": {"attempts": 0, "rule_id": job.rule_id},
                "at_front": bool(priority and priority > 0),
            }
            if self._retry:
                options["retry"] = self._retry
            if delay_seconds > 0:
                queue.enqueue_in(timedelta(seconds=delay_seconds), EXECUTE_RULE_FUNC, **options)
                descriptor.status = "scheduled"
            else:
                queue.enqueue(EXECUTE_RULE_FUNC, **options)
            return descriptor

        return await asyncio.to_thread(_enqueue)

    async def dispatch_condition_check(self) -> JobDescriptor:
        """Ensure the repeating five-minute condition check exists in the scheduler."""

        def _schedule() -> JobDescriptor:
            scheduler = self._scheduler_factory()
            status = "scheduled"
            if CONDITION_SCHEDULE_ID in scheduler:
                status = "already-scheduled"
            else:
                interval_minutes = max(1, settings.condition_check_interval_seconds // 60)
                scheduler.cron(
                    f"*/{interval_minutes} * * * *",
                    func=CHECK_CONDITIONS_FUNC,
                    id=CONDITION_SCHEDULE_ID,
                    queue_name=CONDITION_CHECK_QUEUE,
                    repeat=None,
                    use_local_timezone=False,
                )
            return JobDescriptor(
                id=CONDITION_SCHEDULE_ID,
                name=CONDITION_CHECK_QUEUE,
                queue=CONDITION_CHECK_QUEUE,
                mode=self.mode,
                status=status,
            )

        return await asyncio.to_thread(_schedule)


@dataclass
class QueueCounters:
    durable_jobs: int = 0
    duplicate_jobs: int = 0
    mode_changes: int = 0
    last_error: str | None = None
    last_transition_at: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)


class TaskQueue:
    """Dispatches execute-rule and condition-check jobs in durable or fallback mode."""

    def __init__(
        self,
        *,
        broker: BrokerDispatcher | None = None,
        inline: InlineDispatcher | None = None,
        dlq: "DeadLetterQueue | None" = None,
    ) -> None:
        self.broker = broker
        self.inline = inline or InlineDispatcher()
        self.inline.on_failure = self._inline_failure
        self.dlq = dlq
        self.counters = QueueCounters()
        self._dispatcher: BrokerDispatcher | InlineDispatcher = self.inline

    @property
    def mode(self) -> str:
        return self._dispatcher.mode

    @property
    def connection(self) -> Redis | None:
        return self.broker.connection if self.broker else None

    def on_connect(self) -> None:
        if self.broker is None or self._dispatcher is self.broker:
            return
        self._switch(self.broker, reason="connected")

    def on_disconnect(self, reason: str) -> None:
        self.counters.last_error = reason
        if self._dispatcher is self.inline:
            return
        self._switch(self.inline, reason=reason)

    def _switch(self, dispatcher: BrokerDispatcher | InlineDispatcher, *, reason: str) -> None:
        previous = self._dispatcher.mode
        self._dispatcher = dispatcher
        now = datetime.now(timezone.utc).isoformat()
        self.counters.mode_changes += 1
        self.counters.last_transition_at = now
        self.counters.history = (self.counters.history + [{"from": previous, "to": dispatcher.mode, "at": now}])[-20:]
        log_event(
            logger,
            "queue_mode_change",
            level=logging.WARNING if dispatcher.mode == FALLBACK else logging.INFO,
            from_mode=previous,
            to_mode=dispatcher.mode,
            reason=reason,
        )

    def bootstrap(self) -> None:
        """Initial synchronous connectivity check, skipped in the test environment."""
        if self.broker is None:
            logger.info("Task queue running inline; no broker configured")
            return
        if settings.environment.lower() == "test":
            logger.info("Task queue disabled in test environment")
            return
        try:
            self.broker.connection.ping()
        except RedisError as exc:
            logger.warning("Redis unavailable; running jobs inline: %s", exc)
            self.on_disconnect(str(exc))
            return
        self.on_connect()
        logger.info("Task queue ready (mode: %s)", self.mode)

    async def probe(self) -> bool:
        """Ping the broker and translate the outcome into a connect/disconnect event."""
        if self.broker is None:
            return False
        try:
            await asyncio.to_thread(self.broker.connection.ping)
        except RedisError as exc:
            self.on_disconnect(str(exc))
            return False
        self.on_connect()
        return True

    async def add_execute_rule_job(
        self, job: ExecutionJob, *, delay_seconds: float = 0, priority: int | None = None
    ) -> JobDescriptor:
        dispatcher = self._dispatcher
        try:
            descriptor = await dispatcher.dispatch_execution(job, delay_seconds=delay_seconds, priority=priority)
        except RedisError as exc:
            self.on_disconnect(str(exc))
            raise
        if dispatcher.mode == DURABLE:
            if descriptor.status == "duplicate":
                self.counters.duplicate_jobs += 1
            else:
                self.counters.durable_jobs += 1
        return descriptor

    async def add_condition_check_job(self) -> JobDescriptor:
        dispatcher = self._dispatcher
        try:
            return await dispatcher.dispatch_condition_check()
        except RedisError as exc:
            self.on_disconnect(str(exc))
            raise

    def _inline_failure(
        self, queue_name: str, job_data: dict[str, Any], error: BaseException, metadata: dict[str, Any]
    ) -> None:
        attempts = int(metadata.pop("attempts", 1))
        self.handle_failed_job(queue_name, job_data, error, attempts, metadata)

    def handle_failed_job(
        self,
        queue_name: str,
        job_data: dict[str, Any],
        error: BaseException,
        attempts: int,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        """Route a terminal failure to the DLQ; without a broker the failure is only logged."""
        if self.mode == DURABLE and self.dlq is not None:
            try:
                return self.dlq.add(queue_name, job_data, error, attempts, metadata).id
            except RedisError as exc:
                logger.error("Failed to write %s job to DLQ: %s", queue_name, exc)
                self.on_disconnect(str(exc))
        log_event(
            logger,
            "job_failed_without_dlq",
            level=logging.ERROR,
            queue=queue_name,
            job=job_data,
            error=str(error),
            attempts=attempts,
        )
        return None

    def is_queue_healthy(self) -> bool:
        return self.mode == DURABLE

    def get_queue_status(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "healthy": self.is_queue_healthy(),
            "broker_configured": self.broker is not None,
            "durable_jobs": self.counters.durable_jobs,
            "duplicate_jobs": self.counters.duplicate_jobs,
            "fallback": asdict(self.inline.stats),
            "mode_changes": self.counters.mode_changes,
            "last_error": self.counters.last_error,
            "last_transition_at": self.counters.last_transition_at,
        }

    def snapshot(self) -> dict[str, Any]:
        """Diagnostic snapshot of queues, registries, and workers."""
        status = self.get_queue_status()
        if self.broker is None or self.mode != DURABLE:
            return {**status, "status": "offline", "queues": [], "workers": []}

        queues: list[dict[str, Any]] = []
        workers: list[dict[str, Any]] = []
        warnings: list[str] = []
        try:
            for name in settings.worker_queue_names:
                queue = self.broker.queue(name)
                queues.append(
                    {
                        "name": name,
                        "size": queue.count,
                        "deferred": len(DeferredJobRegistry(queue=queue)),
                        "scheduled": len(ScheduledJobRegistry(queue=queue)),
                        "started": len(StartedJobRegistry(queue=queue)),
                        "failed": len(FailedJobRegistry(queue=queue)),
                    }
                )
            for worker in Worker.all(connection=self.broker.connection):
                workers.append(
                    {
                        "name": worker.name,
                        "state": getattr(worker, "state", "unknown"),
                        "queues": list(worker.queue_names()),
                        "current_job_id": worker.get_current_job_id(),
                    }
                )
        except RedisError as exc:
            logger.warning("Unable to read queue state: %s", exc)
            warnings.append("broker_unreachable")
        if not workers:
            warnings.append("no_workers")
        return {
            **status,
            "status": "online" if not warnings else "degraded",
            "queues": queues,
            "workers": workers,
            "warnings": warnings,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
