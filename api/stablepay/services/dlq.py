"""Redis-backed dead-letter queue for jobs that exhausted their retries.

Storage layout:
- ``dlq:{id}`` holds the JSON entry with a TTL (30 days by default).
- ``dlq:entries`` is a sorted set of entry ids scored by failure time (epoch ms).
- ``dlq:stats:queues`` / ``dlq:stats:errors`` / ``dlq:stats:retryable`` are lifetime counters.

Invariants:
- ``can_retry`` is fixed when the entry is written: false once attempts reach the
  limit or the error is of a validation class.
- ``retry_job`` never creates a job for a missing or non-retryable entry.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
import traceback
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from pydantic import BaseModel, Field
from redis import Redis
from rq import Queue

from stablepay.core.config import settings
from stablepay.core.errors import is_retryable
from stablepay.core.logging_config import log_event
from stablepay.services.task_queue import CONDITION_CHECK_QUEUE, EXECUTE_RULE_QUEUE, build_retry

logger = logging.getLogger("stablepay.services.dlq")

ENTRIES_KEY = "dlq:entries"
QUEUE_STATS_KEY = "dlq:stats:queues"
ERROR_STATS_KEY = "dlq:stats:errors"
RETRYABLE_KEY = "dlq:stats:retryable"

NON_RETRYABLE_ERRORS = ("ValidationError", "AuthenticationError", "PermissionDenied", "InvalidInput")

JOB_FUNCTIONS: dict[str, str] = {
    EXECUTE_RULE_QUEUE: "stablepay.jobs.execution.execute_rule_job",
    CONDITION_CHECK_QUEUE: "stablepay.jobs.conditions.check_conditions_job",
}


class DLQErrorInfo(BaseModel):
    name: str
    message: str
    stack: str | None = None
    timestamp: int


class DLQMetadata(BaseModel):
    user_id: str | None = None
    rule_id: str | None = None
    execution_id: str | None = None
    priority: int | None = None


class DLQEntry(BaseModel):
    id: str
    original_queue: str
    job_data: dict[str, Any] = Field(default_factory=dict)
    error: DLQErrorInfo
    attempts: int
    first_failed_at: int
    last_failed_at: int
    can_retry: bool
    metadata: DLQMetadata = Field(default_factory=DLQMetadata)

    @property
    def error_type(self) -> str:
        return self.error.message.split(":")[0].strip() or "Unknown"


@dataclass(frozen=True)
class RetryResult:
    success: bool
    job_id: str | None = None
    error: str | None = None


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def can_retry_error(name: str, message: str, attempts: int, *, max_attempts: int, retryable: bool = True) -> bool:
    if attempts >= max_attempts or not retryable:
        return False
    return not any(marker in message or marker == name for marker in NON_RETRYABLE_ERRORS)


class DeadLetterQueue:
    """Durable store of failed jobs with retry, cleanup, and statistics operations."""

    def __init__(
        self,
        connection: Redis,
        *,
        queue_factory: Callable[[str], Queue] | None = None,
        job_functions: dict[str, str] | None = None,
        ttl_days: int | None = None,
        max_attempts: int | None = None,
        stats_sample_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.connection = connection
        self._queue_factory = queue_factory or (lambda name: Queue(name, connection=connection))
        self._job_functions = job_functions or JOB_FUNCTIONS
        self._ttl_seconds = int((ttl_days or settings.dlq_ttl_days) * 86400)
        self._max_attempts = max_attempts or settings.dlq_max_attempts
        self._sample_size = stats_sample_size or settings.dlq_stats_sample_size
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def add(
        self,
        original_queue: str,
        job_data: dict[str, Any],
        error: BaseException,
        attempts: int,
        metadata: dict[str, Any] | None = None,
    ) -> DLQEntry:
        """Persist a failed job and bump the lifetime counters."""
        now = self._now_ms()
        name = type(error).__name__
        message = str(error) or name
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)) or None
        entry = DLQEntry(
            id=f"dlq_{now}_{secrets.token_hex(5)}",
            original_queue=original_queue,
            job_data=job_data,
            error=DLQErrorInfo(name=name, message=message, stack=stack, timestamp=now),
            attempts=attempts,
            first_failed_at=now,
            last_failed_at=now,
            can_retry=can_retry_error(
                name, message, attempts, max_attempts=self._max_attempts, retryable=is_retryable(error)
            ),
            metadata=DLQMetadata(**(metadata or {})),
        )
        pipeline = self.connection.pipeline()
        pipeline.setex(f"dlq:{entry.id}", self._ttl_seconds, entry.model_dump_json())
        pipeline.zadd(ENTRIES_KEY, {entry.id: now})
        pipeline.hincrby(QUEUE_STATS_KEY, original_queue, 1)
        pipeline.hincrby(ERROR_STATS_KEY, entry.error_type, 1)
        if entry.can_retry:
            pipeline.incr(RETRYABLE_KEY)
        pipeline.execute()
        log_event(
            logger,
            "dlq_add",
            level=logging.WARNING,
            dlq_id=entry.id,
            queue=original_queue,
            error=message,
            attempts=attempts,
            can_retry=entry.can_retry,
        )
        return entry

    def get_entry(self, dlq_id: str) -> DLQEntry | None:
        raw = self.connection.get(f"dlq:{dlq_id}")
        if raw is None:
            return None
        return DLQEntry.model_validate_json(raw)

    def _iter_entries(self, batch_size: int = 200):
        """Yield live entries newest first, skipping index members whose payload expired."""
        start = 0
        while True:
            ids = self.connection.zrevrange(ENTRIES_KEY, start, start + batch_size - 1)
            if not ids:
                return
            for entry_id in ids:
                entry = self.get_entry(_text(entry_id))
                if entry is not None:
                    yield entry
            start += batch_size

    def get_entries(
        self,
        offset: int = 0,
        limit: int = 50,
        *,
        queue: str | None = None,
        can_retry: bool | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Return a newest-first page; filters apply before paging so pages stay full."""
        if queue is None and can_retry is None and user_id is None:
            ids = self.connection.zrevrange(ENTRIES_KEY, offset, offset + limit - 1)
            entries = [entry for entry in (self.get_entry(_text(item)) for item in ids) if entry is not None]
            total = int(self.connection.zcard(ENTRIES_KEY))
            return {"entries": entries, "total": total, "offset": offset, "limit": limit}

        matched: list[DLQEntry] = []
        for entry in self._iter_entries():
            if queue and entry.original_queue != queue:
                continue
            if can_retry is not None and entry.can_retry != can_retry:
                continue
            if user_id and entry.metadata.user_id != user_id:
                continue
            matched.append(entry)
        return {"entries": matched[offset : offset + limit], "total": len(matched), "offset": offset, "limit": limit}

    def retry_job(
        self,
        dlq_id: str,
        *,
        delay_ms: int = 0,
        priority: int | None = None,
        remove_from_dlq: bool = False,
    ) -> RetryResult:
        """Re-enqueue an entry into its original queue with a fresh retry budget."""
        entry = self.get_entry(dlq_id)
        if entry is None:
            return RetryResult(False, error="DLQ entry not found")
        if not entry.can_retry:
            return RetryResult(False, error="Job is not retryable")
        func = self._job_functions.get(entry.original_queue)
        if func is None:
            return RetryResult(False, error=f"No job function registered for queue {entry.original_queue}")

        queue = self._queue_factory(entry.original_queue)
        options: dict[str, Any] = {
            "kwargs": entry.job_data,
            "retry": build_retry(settings.job_attempts, settings.job_backoff_seconds),
            "job_timeout": settings.job_timeout_seconds,
            "description": f"dlq-retry:{entry.id}",
            "meta": {"dlq_id": entry.id, "attempts": 0, **entry.metadata.model_dump(exclude_none=True)},
        }
        if (priority if priority is not None else entry.metadata.priority or 0) > 0:
            options["at_front"] = True
        try:
            if delay_ms > 0:
                job = queue.enqueue_in(timedelta(milliseconds=delay_ms), func, **options)
            else:
                job = queue.enqueue(func, **options)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Retry of %s failed to enqueue: %s", dlq_id, exc)
            return RetryResult(False, error=str(exc))

        if remove_from_dlq:
            self.remove(dlq_id)
        log_event(logger, "dlq_retry", dlq_id=dlq_id, job_id=job.id, queue=entry.original_queue)
        return RetryResult(True, job_id=job.id)

    def remove(self, dlq_id: str) -> bool:
        pipeline = self.connection.pipeline()
        pipeline.delete(f"dlq:{dlq_id}")
        pipeline.zrem(ENTRIES_KEY, dlq_id)
        deleted, _ = pipeline.execute()
        return bool(deleted)

    def get_stats(self) -> dict[str, Any]:
        """Exact total plus breakdowns sampled over the most recent entries.

        The ``lifetime`` counters only ever grow; they are not reduced by
        retries, removals, or TTL expiry.
        """
        total = int(self.connection.zcard(ENTRIES_KEY))
        stats: dict[str, Any] = {
            "total_entries": total,
            "entries_by_queue": {},
            "entries_by_error": {},
            "retryable_entries": 0,
            "oldest_entry": None,
            "newest_entry": None,
            "sample_size": 0,
            "lifetime": self._lifetime_counters(),
        }
        if total == 0:
            return stats

        oldest = self.connection.zrange(ENTRIES_KEY, 0, 0, withscores=True)
        newest = self.connection.zrevrange(ENTRIES_KEY, 0, 0, withscores=True)
        stats["oldest_entry"] = int(oldest[0][1]) if oldest else None
        stats["newest_entry"] = int(newest[0][1]) if newest else None

        sample_ids = self.connection.zrevrange(ENTRIES_KEY, 0, self._sample_size - 1)
        by_queue: dict[str, int] = {}
        by_error: dict[str, int] = {}
        retryable = 0
        sampled = 0
        for entry_id in sample_ids:
            entry = self.get_entry(_text(entry_id))
            if entry is None:
                continue
            sampled += 1
            by_queue[entry.original_queue] = by_queue.get(entry.original_queue, 0) + 1
            by_error[entry.error_type] = by_error.get(entry.error_type, 0) + 1
            if entry.can_retry:
                retryable += 1
        stats.update(
            entries_by_queue=by_queue,
            entries_by_error=by_error,
            retryable_entries=retryable,
            sample_size=sampled,
        )
        return stats

    def _lifetime_counters(self) -> dict[str, Any]:
        queues = self.connection.hgetall(QUEUE_STATS_KEY)
        errors = self.connection.hgetall(ERROR_STATS_KEY)
        return {
            "by_queue": {_text(key): int(value) for key, value in queues.items()},
            "by_error": {_text(key): int(value) for key, value in errors.items()},
            "retryable": int(self.connection.get(RETRYABLE_KEY) or 0),
        }

    def cleanup_old_entries(self, older_than_days: int = 30) -> int:
        cutoff = self._now_ms() - older_than_days * 86_400_000
        old_ids = self.connection.zrangebyscore(ENTRIES_KEY, 0, cutoff)
        if not old_ids:
            return 0
        pipeline = self.connection.pipeline()
        for entry_id in old_ids:
            pipeline.delete(f"dlq:{_text(entry_id)}")
        pipeline.zremrangebyscore(ENTRIES_KEY, 0, cutoff)
        pipeline.execute()
        logger.info("Cleaned up %d DLQ entries older than %d days", len(old_ids), older_than_days)
        return len(old_ids)

    def batch_retry(
        self,
        *,
        queue: str | None = None,
        error_pattern: str | None = None,
        max_age_hours: float | None = None,
        limit: int = 10,
    ) -> dict[str, int]:
        """Retry up to ``limit`` retryable entries matching every given criterion."""
        pattern = re.compile(error_pattern) if error_pattern else None
        now = self._now_ms()
        retried = failed = 0
        candidates = [entry for entry in self._iter_entries() if entry.can_retry]
        for entry in candidates:
            if retried >= limit:
                break
            if queue and entry.original_queue != queue:
                continue
            if pattern and not pattern.search(entry.error.message):
                continue
            if max_age_hours is not None and now - entry.last_failed_at > max_age_hours * 3_600_000:
                continue
            result = self.retry_job(entry.id, remove_from_dlq=True)
            if result.success:
                retried += 1
            else:
                failed += 1
        return {"retried": retried, "failed": failed}
