"""Cron scheduler for schedule-type rules.

Each tick selects ACTIVE schedule rules whose ``next_run_at`` is unset or
within the lookahead window, computes the rule's next cron occurrence in its
own timezone, and enqueues one execution job per due occurrence.

Invariants:
- The occurrence evaluated on a tick is anchored one second before the stored
  ``next_run_at``, so the stored occurrence itself is the one that fires.
- ``next_run_at`` advances before the job is dispatched; a failed dispatch
  restores it so the next tick retries the same occurrence.
- Job keys are derived from (rule, occurrence), so re-enqueueing an occurrence
  always collides on the Execution idempotency key.
- Missed occurrences after downtime fire once, then the schedule resumes from now.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from croniter import CroniterError, croniter
from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stablepay.core.config import settings
from stablepay.models import Rule, RuleStatus, RuleType
from stablepay.schema.rule import RuleBody
from stablepay.services.audit_log import AuditLogger, Severity
from stablepay.services.task_queue import ExecutionJob, TaskQueue
from stablepay.utils.datetime import as_utc, to_epoch_ms, utcnow

logger = logging.getLogger("stablepay.services.cron_scheduler")


class ScheduleDefinitionError(ValueError):
    """Raised when a rule's schedule cannot be evaluated at all."""


def next_occurrence(expression: str, tz_name: str, after: datetime) -> datetime:
    """Next cron occurrence strictly after ``after``, evaluated in ``tz_name``, returned in UTC."""
    try:
        tz = ZoneInfo(tz_name or "UTC")
        local = as_utc(after).astimezone(tz)
        upcoming = croniter(expression, local).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as exc:
        raise ScheduleDefinitionError(f"Invalid schedule '{expression}' ({tz_name}): {exc}") from exc
    if upcoming.tzinfo is None:
        upcoming = upcoming.replace(tzinfo=tz)
    return upcoming.astimezone(timezone.utc)


def schedule_key(rule_id: str, occurrence: datetime) -> str:
    millis = to_epoch_ms(occurrence)
    digest = hashlib.sha1(f"{rule_id}:{millis}".encode()).hexdigest()[:8]
    return f"sched-{rule_id}-{millis}-{digest}"


@dataclass
class SchedulerStats:
    ticks: int = 0
    rules_processed: int = 0
    jobs_enqueued: int = 0
    rules_failed: int = 0
    rules_resumed: int = 0
    last_tick_at: str | None = None
    last_errors: list[dict[str, str]] = field(default_factory=list)


class CronScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        task_queue: TaskQueue,
        *,
        audit: AuditLogger | None = None,
        tick_seconds: float | None = None,
        lookahead_seconds: int | None = None,
        due_window_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._task_queue = task_queue
        self._audit = audit or AuditLogger()
        self.tick_seconds = settings.scheduler_tick_seconds if tick_seconds is None else tick_seconds
        self._lookahead = timedelta(
            seconds=settings.scheduler_lookahead_seconds if lookahead_seconds is None else lookahead_seconds
        )
        self._due_window = timedelta(
            seconds=settings.scheduler_due_window_seconds if due_window_seconds is None else due_window_seconds
        )
        self._clock = clock
        self.stats = SchedulerStats()
        self.is_running = False
        self._tick_in_progress = False

    async def tick(self) -> dict[str, Any]:
        """Run one scheduling pass; overlapping calls return immediately."""
        if self._tick_in_progress:
            logger.info("Scheduler tick skipped; previous tick still running")
            return {"skipped": True}
        self._tick_in_progress = True
        try:
            return await self._tick()
        finally:
            self._tick_in_progress = False

    async def _tick(self) -> dict[str, Any]:
        now = self._clock()
        enqueued: list[str] = []
        initialized: list[str] = []
        failed: list[str] = []
        errors: list[dict[str, str]] = []

        async with self._session_factory() as session:
            resumed = await self._resume_paused(session, now)
            result = await session.execute(
                select(Rule.id).where(
                    Rule.status == RuleStatus.ACTIVE,
                    Rule.type == RuleType.SCHEDULE,
                    or_(Rule.next_run_at.is_(None), Rule.next_run_at <= now + self._lookahead),
                )
            )
            rules = list(result.scalars())
            for pk in rules:
                rule_id = str(pk)
                rule = await session.get(Rule, pk)
                if rule is None:
                    continue
                try:
                    outcome = await self._process_rule(session, rule, now)
                except ScheduleDefinitionError as exc:
                    await self._fail_rule(session, pk, str(exc))
                    failed.append(rule_id)
                    continue
                except Exception as exc:  # noqa: BLE001
                    await session.rollback()
                    logger.error("Failed to schedule rule %s: %s", rule_id, exc)
                    errors.append({"rule_id": rule_id, "error": str(exc)})
                    continue
                if outcome == "enqueued":
                    enqueued.append(rule_id)
                elif outcome == "initialized":
                    initialized.append(rule_id)

        self.stats.ticks += 1
        self.stats.rules_processed += len(rules)
        self.stats.jobs_enqueued += len(enqueued)
        self.stats.rules_failed += len(failed)
        self.stats.rules_resumed += len(resumed)
        self.stats.last_tick_at = as_utc(now).isoformat()
        self.stats.last_errors = errors[-20:]
        return {
            "checked_at": as_utc(now).isoformat(),
            "rules_checked": len(rules),
            "enqueued": enqueued,
            "initialized": initialized,
            "failed": failed,
            "resumed": resumed,
            "errors": errors,
        }

    async def _process_rule(self, session: AsyncSession, rule: Rule, now: datetime) -> str | None:
        try:
            body = RuleBody.model_validate(rule.body)
        except ValidationError as exc:
            raise ScheduleDefinitionError(f"Rule body is invalid: {exc.error_count()} errors") from exc
        if body.schedule is None:
            raise ScheduleDefinitionError("Schedule rule has no schedule")

        stored = as_utc(rule.next_run_at)
        anchor = stored - timedelta(seconds=1) if stored else now
        occurrence = next_occurrence(body.schedule.cron, body.schedule.timezone, anchor)

        if occurrence <= now + self._due_window:
            following = next_occurrence(body.schedule.cron, body.schedule.timezone, max(occurrence, now))
            rule.next_run_at = following
            await session.commit()
            job = ExecutionJob(
                rule_id=str(rule.id),
                idempotency_key=schedule_key(str(rule.id), occurrence),
                triggered_by="schedule",
                scheduled_for=occurrence.isoformat(),
            )
            try:
                await self._task_queue.add_execute_rule_job(job)
            except Exception:
                rule.next_run_at = stored
                await session.commit()
                raise
            logger.info("Enqueued rule %s for %s; next run %s", rule.id, occurrence.isoformat(), following.isoformat())
            return "enqueued"

        if stored is None:
            rule.next_run_at = occurrence
            await session.commit()
            return "initialized"
        return None

    async def _fail_rule(self, session: AsyncSession, rule_id: uuid.UUID, reason: str) -> None:
        await session.rollback()
        rule = await session.get(Rule, rule_id)
        if rule is None:
            return
        rule.status = RuleStatus.FAILED
        owner = str(rule.user_id)
        await session.commit()
        logger.error("Rule %s marked FAILED: %s", rule_id, reason)
        self._audit.log_event(
            "schedule_failed",
            category="RULE",
            severity=Severity.HIGH,
            user_id=owner,
            resource="rule",
            resource_id=str(rule_id),
            reason=reason,
        )

    async def _resume_paused(self, session: AsyncSession, now: datetime) -> list[str]:
        """Reactivate rules auto-paused by the engine once their pause has elapsed."""
        result = await session.execute(
            select(Rule).where(
                Rule.status == RuleStatus.PAUSED,
                Rule.pause_reason.is_not(None),
                Rule.next_run_at.is_not(None),
                Rule.next_run_at <= now,
            )
        )
        resumed: list[str] = []
        for rule in result.scalars():
            reason = rule.pause_reason
            rule.status = RuleStatus.ACTIVE
            rule.pause_reason = None
            rule.next_run_at = None
            resumed.append(str(rule.id))
            self._audit.log_event(
                "rule_auto_resumed",
                category="RULE",
                severity=Severity.MEDIUM,
                user_id=str(rule.user_id),
                resource="rule",
                resource_id=str(rule.id),
                pause_reason=reason,
            )
        if resumed:
            await session.commit()
        return resumed

    async def run(self, stop: asyncio.Event) -> None:
        """Tick immediately, then every ``tick_seconds`` until ``stop`` is set."""
        if self.is_running:
            logger.warning("Cron scheduler already running")
            return
        self.is_running = True
        logger.info("Cron scheduler started (tick %ss)", self.tick_seconds)
        try:
            while not stop.is_set():
                try:
                    await self.tick()
                except Exception:  # noqa: BLE001
                    logger.exception("Scheduler tick failed")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.tick_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.is_running = False
            logger.info("Cron scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        return asdict(self.stats)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "tick_seconds": self.tick_seconds,
            "queue_mode": self._task_queue.mode,
            **self.get_stats(),
        }
