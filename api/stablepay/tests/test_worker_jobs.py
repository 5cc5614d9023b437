from __future__ import annotations

from types import SimpleNamespace

import pytest
from rq.job import Retry

from stablepay.core.errors import ErrorKind, RuleExecutionError
from stablepay.jobs.schedule_registry import DLQ_CLEANUP_SCHEDULE_ID, ensure_schedules
from stablepay.services.dlq import DeadLetterQueue
from stablepay.services.task_queue import (
    CONDITION_SCHEDULE_ID,
    EXECUTE_RULE_QUEUE,
    BrokerDispatcher,
    TaskQueue,
    build_retry,
)
from stablepay.worker import build_dlq_handler


class FakeScheduler:
    def __init__(self) -> None:
        self.jobs: dict[str, dict] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.jobs

    def cron(self, cron_string: str, **options) -> None:
        self.jobs[options["id"]] = {"cron": cron_string, **options}


def _rq_job(*, failed: bool, attempts: int = 0):
    saved = []
    job = SimpleNamespace(
        id="job-1",
        origin=EXECUTE_RULE_QUEUE,
        kwargs={"rule_id": "r-1", "idempotency_key": "sched-r-1"},
        meta={"attempts": attempts, "rule_id": "r-1", "dlq_id": "ignored"},
        is_failed=failed,
    )
    job.save_meta = lambda: saved.append(dict(job.meta))
    return job, saved


@pytest.fixture()
def dlq(redis_conn) -> DeadLetterQueue:
    return DeadLetterQueue(redis_conn)


def test_retryable_failure_with_retries_left_is_not_dead_lettered(dlq):
    handler = build_dlq_handler(dlq)
    job, saved = _rq_job(failed=False)

    assert handler(job, TimeoutError, TimeoutError("provider timeout"), None) is True

    assert saved == [{"attempts": 1, "rule_id": "r-1", "dlq_id": "ignored"}]
    assert dlq.get_stats()["total_entries"] == 0


def test_exhausted_job_is_dead_lettered(dlq):
    handler = build_dlq_handler(dlq)
    job, _ = _rq_job(failed=True, attempts=2)

    handler(job, TimeoutError, TimeoutError("provider timeout"), None)

    [entry] = dlq.get_entries()["entries"]
    assert entry.attempts == 3
    assert entry.job_data == {"rule_id": "r-1", "idempotency_key": "sched-r-1"}
    assert entry.metadata.rule_id == "r-1"
    assert entry.can_retry is True


def test_non_retryable_error_is_dead_lettered_immediately(dlq):
    handler = build_dlq_handler(dlq)
    job, _ = _rq_job(failed=False)
    error = RuleExecutionError(ErrorKind.INVALID_ADDRESS, "Invalid address 0x1 for base")

    handler(job, RuleExecutionError, error, None)

    [entry] = dlq.get_entries()["entries"]
    assert entry.attempts == 1
    assert entry.can_retry is False
    assert entry.error_type == "INVALID_ADDRESS"


def test_non_retryable_job_is_dead_lettered_once_across_retries(dlq):
    handler = build_dlq_handler(dlq)
    job, saved = _rq_job(failed=False)
    error = RuleExecutionError(ErrorKind.NOT_FOUND, "Rule r-1 not found or not active")

    for is_last in (False, False, True):
        job.is_failed = is_last
        handler(job, RuleExecutionError, error, None)

    [entry] = dlq.get_entries()["entries"]
    assert entry.attempts == 1
    assert dlq.get_stats()["total_entries"] == 1
    assert job.meta["attempts"] == 3
    assert saved[-1]["dead_lettered"] is True


def test_periodic_jobs_register_once(redis_conn):
    task_queue = TaskQueue(broker=BrokerDispatcher(redis_conn))
    task_queue.on_connect()
    scheduler = FakeScheduler()

    assert ensure_schedules(task_queue, scheduler) == [CONDITION_SCHEDULE_ID, DLQ_CLEANUP_SCHEDULE_ID]
    assert ensure_schedules(task_queue, scheduler) == []
    assert scheduler.jobs[CONDITION_SCHEDULE_ID]["cron"] == "*/5 * * * *"
    assert scheduler.jobs[DLQ_CLEANUP_SCHEDULE_ID]["cron"] == "0 2 * * *"


def test_schedules_skipped_without_durable_queue():
    assert ensure_schedules(TaskQueue(), FakeScheduler()) == []


def test_retry_profile_backs_off_exponentially():
    retry = build_retry(3, 2)

    assert isinstance(retry, Retry)
    assert retry.max == 2
    assert retry.intervals == [2, 4]
    assert build_retry(1, 2) is None
