"""Per-service circuit breaker guarding calls to external dependencies.

Invariants:
- CLOSED -> OPEN once the consecutive failure streak reaches ``failure_threshold``.
- OPEN rejects calls without invoking them until ``recovery_timeout`` has elapsed.
- The first call after the timeout runs in HALF_OPEN; success closes the circuit,
  failure reopens it immediately with a fresh timeout.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from stablepay.core.errors import CircuitBreakerError
from stablepay.core.logging_config import log_event

logger = logging.getLogger("stablepay.safety.circuit_breaker")

T = TypeVar("T")
Clock = Callable[[], float]


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int
    recovery_timeout: float
    # Informational only; the breaker does not schedule probes itself.
    monitoring_period: float = 60.0


class CircuitBreaker:
    """Track failures for one named service and gate calls accordingly."""

    def __init__(self, name: str, config: BreakerConfig, *, clock: Clock = time.time) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.total_failures = 0
        self.total_requests = 0
        self.last_failure: float | None = None
        self.last_success: float | None = None
        self.next_attempt: float | None = None

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, re-raising its error unchanged."""
        now = self._clock()
        if self.state is CircuitState.OPEN:
            if self.next_attempt is not None and now < self.next_attempt:
                raise CircuitBreakerError(self.name, self.metrics())
            self._transition(CircuitState.HALF_OPEN)

        self.total_requests += 1
        try:
            result = await operation()
        except Exception as exc:
            self._on_failure(exc)
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.successes += 1
        self.last_success = self._clock()
        self.failures = 0
        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, exc: Exception) -> None:
        now = self._clock()
        self.failures += 1
        self.total_failures += 1
        self.last_failure = now
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.config.failure_threshold:
            self.next_attempt = now + self.config.recovery_timeout
            self._transition(CircuitState.OPEN, error=str(exc))

    def _transition(self, target: CircuitState, *, error: str | None = None) -> None:
        if target is self.state:
            return
        previous = self.state
        self.state = target
        log_event(
            logger,
            "circuit_transition",
            level=logging.WARNING if target is CircuitState.OPEN else logging.INFO,
            service=self.name,
            from_state=previous.value,
            to_state=target.value,
            failures=self.failures,
            error=error,
        )

    def failure_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(self.total_failures / self.total_requests * 100, 2)

    def metrics(self) -> dict[str, Any]:
        return {
            "service": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "total_failures": self.total_failures,
            "total_requests": self.total_requests,
            "failure_rate": self.failure_rate(),
            "last_failure": self.last_failure,
            "last_success": self.last_success,
            "next_attempt": self.next_attempt,
        }

    def reset(self) -> None:
        """Return to CLOSED with zeroed counters; reserved for manual admin recovery."""
        self._reset_counters()
        log_event(logger, "circuit_reset", service=self.name)
