from __future__ import annotations

from types import SimpleNamespace

import pytest

from stablepay.core.errors import ErrorKind, RuleExecutionError
from stablepay.services.dlq import DeadLetterQueue, can_retry_error
from stablepay.services.task_queue import CONDITION_CHECK_QUEUE, EXECUTE_RULE_FUNC, EXECUTE_RULE_QUEUE


class RecordingRQQueue:
    def __init__(self) -> None:
        self.enqueued: list[tuple[str, dict]] = []
        self.delayed: list[tuple[object, str, dict]] = []

    def enqueue(self, func, **options):
        self.enqueued.append((func, options))
        return SimpleNamespace(id=f"job-{len(self.enqueued)}")

    def enqueue_in(self, delay, func, **options):
        self.delayed.append((delay, func, options))
        return SimpleNamespace(id=f"delayed-{len(self.delayed)}")


@pytest.fixture()
def rq_queue() -> RecordingRQQueue:
    return RecordingRQQueue()


@pytest.fixture()
def dlq(redis_conn, rq_queue, ticker) -> DeadLetterQueue:
    return DeadLetterQueue(redis_conn, queue_factory=lambda name: rq_queue, ttl_days=30, max_attempts=5, clock=ticker)


def _fail(dlq: DeadLetterQueue, *, queue=EXECUTE_RULE_QUEUE, error=None, attempts=3, user_id=None, rule_id="r-1"):
    return dlq.add(
        queue,
        {"rule_id": rule_id, "idempotency_key": f"k-{rule_id}"},
        error or TimeoutError("SYSTEM_ERROR: provider timeout"),
        attempts,
        {"user_id": user_id, "rule_id": rule_id},
    )


def test_retry_eligibility_rules():
    assert can_retry_error("TimeoutError", "timeout", 4, max_attempts=5)
    assert not can_retry_error("TimeoutError", "timeout", 5, max_attempts=5)
    assert not can_retry_error("ValidationError", "bad body", 1, max_attempts=5)
    assert not can_retry_error("RuntimeError", "AuthenticationError: token expired", 1, max_attempts=5)
    assert not can_retry_error("RuntimeError", "boom", 1, max_attempts=5, retryable=False)


def test_exhausted_entry_cannot_be_retried(dlq, rq_queue):
    entry = _fail(dlq, attempts=5)
    assert entry.can_retry is False

    result = dlq.retry_job(entry.id)
    assert result.success is False
    assert rq_queue.enqueued == []
    assert dlq.get_entry(entry.id) is not None


def test_tagged_non_retryable_errors_are_not_replayable(dlq):
    entry = _fail(dlq, error=RuleExecutionError(ErrorKind.INSUFFICIENT_FUNDS, "Insufficient balance"), attempts=1)
    assert entry.can_retry is False
    assert entry.error_type == "INSUFFICIENT_FUNDS"


def test_retry_requeues_original_function_and_removes_entry(dlq, rq_queue):
    entry = _fail(dlq)
    result = dlq.retry_job(entry.id, remove_from_dlq=True)

    assert result.success and result.job_id == "job-1"
    func, options = rq_queue.enqueued[0]
    assert func == EXECUTE_RULE_FUNC
    assert options["kwargs"]["idempotency_key"] == "k-r-1"
    assert options["meta"]["dlq_id"] == entry.id
    assert dlq.get_entry(entry.id) is None
    assert dlq.retry_job(entry.id).error == "DLQ entry not found"


def test_delayed_retry_keeps_entry_by_default(dlq, rq_queue):
    entry = _fail(dlq)
    result = dlq.retry_job(entry.id, delay_ms=5000)
    assert result.job_id == "delayed-1"
    assert rq_queue.delayed[0][0].total_seconds() == 5
    assert dlq.get_entry(entry.id) is not None


def test_entries_page_newest_first_with_filters(dlq, ticker):
    first = _fail(dlq, rule_id="a", user_id="u-1")
    ticker.advance(1)
    second = _fail(dlq, rule_id="b", user_id="u-2", queue=CONDITION_CHECK_QUEUE)
    ticker.advance(1)
    third = _fail(dlq, rule_id="c", user_id="u-1", attempts=5)

    page = dlq.get_entries(0, 2)
    assert [entry.id for entry in page["entries"]] == [third.id, second.id]
    assert page["total"] == 3

    mine = dlq.get_entries(0, 10, user_id="u-1")
    assert [entry.id for entry in mine["entries"]] == [third.id, first.id]
    assert dlq.get_entries(0, 10, queue=CONDITION_CHECK_QUEUE)["total"] == 1
    retryable = dlq.get_entries(0, 1, can_retry=True)
    assert retryable["total"] == 2
    assert [entry.id for entry in retryable["entries"]] == [second.id]


def test_stats_report_exact_total_and_lifetime_counters(dlq):
    _fail(dlq, rule_id="a")
    _fail(dlq, rule_id="b", attempts=5)
    third = _fail(dlq, rule_id="c", queue=CONDITION_CHECK_QUEUE)
    dlq.remove(third.id)

    stats = dlq.get_stats()
    assert stats["total_entries"] == 2
    assert stats["entries_by_queue"] == {EXECUTE_RULE_QUEUE: 2}
    assert stats["entries_by_error"] == {"SYSTEM_ERROR": 2}
    assert stats["retryable_entries"] == 1
    assert stats["lifetime"]["by_queue"] == {EXECUTE_RULE_QUEUE: 2, CONDITION_CHECK_QUEUE: 1}
    assert stats["lifetime"]["retryable"] == 2


def test_cleanup_removes_only_old_entries(dlq, ticker):
    old = _fail(dlq, rule_id="old")
    ticker.advance(31 * 86_400)
    fresh = _fail(dlq, rule_id="fresh")

    assert dlq.cleanup_old_entries(30) == 1
    assert dlq.get_entries()["total"] == 1
    assert dlq.get_entries()["entries"][0].id == fresh.id
    assert old.id not in {entry.id for entry in dlq.get_entries()["entries"]}


def test_batch_retry_honours_criteria_and_limit(dlq, rq_queue, ticker):
    _fail(dlq, rule_id="a", error=ConnectionError("SYSTEM_ERROR: connection reset"))
    ticker.advance(1)
    _fail(dlq, rule_id="b", error=TimeoutError("SYSTEM_ERROR: provider timeout"))
    ticker.advance(1)
    _fail(dlq, rule_id="c", error=TimeoutError("SYSTEM_ERROR: provider timeout"))
    ticker.advance(1)
    _fail(dlq, rule_id="d", error=TimeoutError("SYSTEM_ERROR: provider timeout"), queue=CONDITION_CHECK_QUEUE)

    outcome = dlq.batch_retry(queue=EXECUTE_RULE_QUEUE, error_pattern="timeout", limit=1)
    assert outcome == {"retried": 1, "failed": 0}
    assert rq_queue.enqueued[0][1]["kwargs"]["rule_id"] == "c"

    ticker.advance(3 * 3600)
    assert dlq.batch_retry(max_age_hours=2) == {"retried": 0, "failed": 0}
    assert dlq.get_stats()["total_entries"] == 3
