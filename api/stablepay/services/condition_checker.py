"""Conditional rule evaluation against an FX feed with trigger debouncing.

Rates are kept as a time series per pair. The rate "at" a window is the latest
sample at least that old; until the series is long enough the window falls
back to a seeded reference rate. While the broker is connected the series,
seeds, and trigger times live in Redis, so the runner's refresh loop and the
work-horses that evaluate condition-check jobs see one feed. Without a broker
they are kept in process and re-seeded after a restart.

Invariants:
- A rule triggers at most once per debounce window, whether the earlier
  trigger is still queued or has already produced an Execution.
- One rule's evaluation error never prevents the other rules from being checked.
- A check only refreshes the feed when its latest sample is older than the
  refresh interval, so checks at one instant read the same rates.
"""

from __future__ import annotations

import logging
import random
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stablepay.core.config import settings
from stablepay.models import Execution, Rule, RuleStatus, RuleType
from stablepay.oracles.fx import FxOracle
from stablepay.schema.rule import Condition, RuleBody
from stablepay.services.fx_state import FxSample, FxState, MemoryFxState
from stablepay.services.task_queue import DURABLE, ExecutionJob, TaskQueue
from stablepay.utils.datetime import as_utc, to_epoch_ms, utcnow

logger = logging.getLogger("stablepay.services.condition_checker")

BASE_RATES = {"EURUSD": 1.0500}
WINDOWS = {
    "5min": timedelta(minutes=5),
    "15min": timedelta(minutes=15),
    "1hour": timedelta(hours=1),
    "24hour": timedelta(hours=24),
}
HISTORY_RETENTION = timedelta(hours=25)


@dataclass
class ConditionState:
    rule_id: str
    metric: str
    window: str
    current_value: float
    previous_value: float
    change_percent: float
    met: bool
    timestamp: datetime


def change_percent(current: float, previous: float) -> float:
    return (current - previous) / previous * 100


def condition_met(condition: Condition, change: float) -> bool:
    if condition.change_direction == "+%":
        return change >= condition.magnitude_percent
    return change <= -condition.magnitude_percent


class ConditionChecker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        task_queue: TaskQueue,
        *,
        fx_oracle: FxOracle | None = None,
        shared_state: FxState | None = None,
        debounce_seconds: int | None = None,
        refresh_interval_seconds: float | None = None,
        market_hours: list[tuple[int, int]] | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._task_queue = task_queue
        self._fx_oracle = fx_oracle
        self._shared_state = shared_state
        self._local_state = MemoryFxState()
        self._debounce = timedelta(
            seconds=settings.condition_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self._refresh_interval = timedelta(
            seconds=settings.fx_refresh_interval_seconds if refresh_interval_seconds is None else refresh_interval_seconds
        )
        self._market_hours = settings.fx_market_hours if market_hours is None else market_hours
        self._clock = clock
        self._rng = rng or random.Random()
        self._states: dict[str, ConditionState] = {}

    @property
    def state(self) -> FxState:
        if self._shared_state is not None and self._task_queue.mode == DURABLE:
            return self._shared_state
        return self._local_state

    def _volatility(self, now: datetime) -> float:
        hour = now.hour
        return 1.5 if any(start <= hour <= end for start, end in self._market_hours) else 1.0

    async def refresh_rates(self) -> dict[str, FxSample]:
        """Append a new sample per tracked pair and seed missing window references."""
        now = self._clock()
        state = self.state
        for pair, base in BASE_RATES.items():
            if self._fx_oracle is not None:
                quote = await self._fx_oracle.get_rate(pair)
                sample = FxSample(pair, quote.rate, now, quote.source)
            else:
                latest = state.latest(pair)
                previous = latest.rate if latest else base
                walk = (self._rng.random() - 0.5) * 0.002 * self._volatility(now)
                reversion = (base - previous) * 0.1
                sample = FxSample(pair, round(previous + walk + reversion, 6), now, "simulated")
            state.append(sample, keep_after=now - HISTORY_RETENTION)
            for window, span in WINDOWS.items():
                if state.seed(pair, window) is None:
                    variation = (self._rng.random() - 0.5) * 0.01
                    state.set_seed_if_missing(
                        window, FxSample(pair, round(base + variation, 6), now - span, f"seed-{window}")
                    )
        return self.get_fx_rates()

    def _needs_refresh(self, now: datetime) -> bool:
        state = self.state
        for pair in BASE_RATES:
            latest = state.latest(pair)
            if latest is None or now - as_utc(latest.timestamp) >= self._refresh_interval:
                return True
        return False

    def current_rate(self, pair: str) -> float | None:
        latest = self.state.latest(pair)
        return latest.rate if latest else None

    def rate_at(self, pair: str, window: str) -> float | None:
        """Latest sample at least ``window`` old, else the seeded reference."""
        span = WINDOWS.get(window)
        if span is None:
            return None
        state = self.state
        sample = state.sample_at_or_before(pair, self._clock() - span)
        if sample is not None:
            return sample.rate
        seed = state.seed(pair, window)
        return seed.rate if seed else None

    def evaluate(self, rule_id: str, condition: Condition) -> ConditionState | None:
        pair = condition.metric.upper()
        window = condition.normalized_window
        current = self.current_rate(pair)
        previous = self.rate_at(pair, window)
        if current is None or previous is None:
            logger.warning("Missing FX data for %s (%s)", pair, window)
            return None
        change = change_percent(current, previous)
        state = ConditionState(
            rule_id=rule_id,
            metric=pair,
            window=window,
            current_value=current,
            previous_value=previous,
            change_percent=round(change, 6),
            met=condition_met(condition, change),
            timestamp=self._clock(),
        )
        self._states[f"{rule_id}-{pair}"] = state
        return state

    async def _recently_triggered(self, session: AsyncSession, rule: Rule, now: datetime) -> bool:
        cutoff = now - self._debounce
        last = self.state.last_triggered(str(rule.id))
        if last and as_utc(last) >= cutoff:
            return True
        recent = await session.scalar(
            select(Execution.id).where(Execution.rule_id == rule.id, Execution.created_at >= cutoff).limit(1)
        )
        return recent is not None

    async def check_all_conditions(self) -> dict[str, Any]:
        now = self._clock()
        if self._needs_refresh(now):
            await self.refresh_rates()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Rule).where(Rule.status == RuleStatus.ACTIVE, Rule.type == RuleType.CONDITIONAL)
            )
            rules = list(result.scalars())

            triggered: list[str] = []
            debounced: list[str] = []
            errors: list[dict[str, str]] = []
            states: list[dict[str, Any]] = []
            for rule in rules:
                rule_id = str(rule.id)
                try:
                    body = RuleBody.model_validate(rule.body)
                    if body.condition is None:
                        continue
                    state = self.evaluate(rule_id, body.condition)
                    if state is None:
                        continue
                    states.append(asdict(state))
                    if not state.met:
                        continue
                    if await self._recently_triggered(session, rule, now):
                        debounced.append(rule_id)
                        logger.info("Rule %s condition met but debounced", rule_id)
                        continue
                    key = f"cond-{rule_id}-{to_epoch_ms(now)}-{secrets.token_hex(4)}"
                    await self._task_queue.add_execute_rule_job(
                        ExecutionJob(rule_id=rule_id, idempotency_key=key, triggered_by="condition")
                    )
                    self.state.mark_triggered(rule_id, now)
                    triggered.append(rule_id)
                    logger.info(
                        "Condition triggered for rule %s: %s %s%s (change %.4f%%)",
                        rule_id,
                        state.metric,
                        body.condition.change_direction,
                        body.condition.magnitude_percent,
                        state.change_percent,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error("Error checking condition for rule %s: %s", rule_id, exc)
                    errors.append({"rule_id": rule_id, "error": str(exc)})

        return {
            "checked_at": as_utc(now).isoformat(),
            "rules_checked": len(rules),
            "triggered": triggered,
            "debounced": debounced,
            "conditions": states,
            "errors": errors,
        }

    def get_condition_states(self) -> dict[str, dict[str, Any]]:
        return {key: asdict(state) for key, state in self._states.items()}

    def get_fx_rates(self) -> dict[str, FxSample]:
        state = self.state
        rates: dict[str, FxSample] = {}
        for pair in state.pairs():
            latest = state.latest(pair)
            if latest is not None:
                rates[pair] = latest
        for (pair, window), sample in state.seeds().items():
            rates[f"{pair}-{window}"] = sample
        return rates
