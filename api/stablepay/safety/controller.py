"""Safety controller: named circuit breakers, health aggregation, and execution policy.

Invariants:
- Every protected call goes through the breaker registered for its service key.
- Policy rejections block execution; ``requires_approval`` is advisory only.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Awaitable, Callable, TypeVar

from stablepay.core.config import Settings, settings as default_settings
from stablepay.core.errors import CircuitBreakerNotFoundError
from stablepay.core.logging_config import log_event
from stablepay.safety.circuit_breaker import BreakerConfig, CircuitBreaker, CircuitState, Clock

logger = logging.getLogger("stablepay.safety.controller")

T = TypeVar("T")

GAS_ORACLE = "GAS_ORACLE"
FX_ORACLE = "FX_ORACLE"
SECRETS_MANAGER = "SECRETS_MANAGER"
CIRCLE_API = "CIRCLE_API"
LLM_SERVICE = "LLM_SERVICE"

BREAKER_CONFIGS: dict[str, BreakerConfig] = {
    GAS_ORACLE: BreakerConfig(failure_threshold=3, recovery_timeout=30.0),
    FX_ORACLE: BreakerConfig(failure_threshold=2, recovery_timeout=60.0),
    SECRETS_MANAGER: BreakerConfig(failure_threshold=2, recovery_timeout=15.0),
    CIRCLE_API: BreakerConfig(failure_threshold=5, recovery_timeout=120.0),
    LLM_SERVICE: BreakerConfig(failure_threshold=3, recovery_timeout=45.0),
}

CRITICAL_SERVICES = (CIRCLE_API, SECRETS_MANAGER)

_SEVERITY = {"healthy": 0, "degraded": 1, "critical": 2}


@dataclass
class SafetyPolicy:
    max_concurrent_executions: int = 10
    max_daily_executions: int = 100
    max_amount_usd: float = 10_000.0
    require_approval_over_usd: float = 1_000.0

    @classmethod
    def from_settings(cls, config: Settings) -> "SafetyPolicy":
        return cls(
            max_concurrent_executions=config.safety_max_concurrent_executions,
            max_daily_executions=config.safety_max_daily_executions,
            max_amount_usd=config.safety_max_amount_usd,
            require_approval_over_usd=config.safety_require_approval_over_usd,
        )


@dataclass(frozen=True)
class ValidationResult:
    allowed: bool
    requires_approval: bool = False
    reason: str | None = None


@dataclass
class SystemHealth:
    overall: str
    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_updated: float = 0.0
    uptime: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _service_status(metrics: dict[str, Any]) -> str:
    if metrics["state"] == CircuitState.CLOSED.value and metrics["failure_rate"] < 10:
        return "healthy"
    if metrics["state"] == CircuitState.HALF_OPEN.value or metrics["failure_rate"] < 50:
        return "degraded"
    return "critical"


class SafetyController:
    """Owns the breakers for every external dependency and the execution policy."""

    def __init__(
        self,
        *,
        configs: dict[str, BreakerConfig] | None = None,
        policy: SafetyPolicy | None = None,
        health_cache_seconds: float | None = None,
        clock: Clock = time.time,
        config: Settings = default_settings,
    ) -> None:
        self._clock = clock
        self._breakers = {
            name: CircuitBreaker(name, breaker_config, clock=clock)
            for name, breaker_config in (configs or BREAKER_CONFIGS).items()
        }
        self.policy = policy or SafetyPolicy.from_settings(config)
        self._health_ttl = config.health_cache_seconds if health_cache_seconds is None else health_cache_seconds
        self._health_cache: SystemHealth | None = None
        self._health_cached_at = 0.0
        self._started_at = clock()

    def breaker(self, service: str) -> CircuitBreaker:
        try:
            return self._breakers[service]
        except KeyError:
            raise CircuitBreakerNotFoundError(service) from None

    async def execute_with_protection(self, service: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.breaker(service).execute(operation)

    def is_service_healthy(self, service: str) -> bool:
        breaker = self._breakers.get(service)
        return breaker is not None and breaker.state is not CircuitState.OPEN

    def is_system_safe(self) -> bool:
        """True only while the payment API and the secrets manager both accept calls."""
        return all(self.is_service_healthy(service) for service in CRITICAL_SERVICES)

    def get_system_health(self) -> SystemHealth:
        now = self._clock()
        if self._health_cache and now - self._health_cached_at < self._health_ttl:
            return self._health_cache

        services: dict[str, dict[str, Any]] = {}
        overall = "healthy"
        for name, breaker in self._breakers.items():
            metrics = breaker.metrics()
            status = _service_status(metrics)
            if _SEVERITY[status] > _SEVERITY[overall]:
                overall = status
            services[name] = {
                "status": status,
                "circuit_breaker": {
                    "state": metrics["state"],
                    "failures": metrics["failures"],
                    "failure_rate": metrics["failure_rate"],
                },
                "error_count": metrics["total_failures"],
                "last_check": now,
            }

        self._health_cache = SystemHealth(
            overall=overall,
            services=services,
            last_updated=now,
            uptime=now - self._started_at,
        )
        self._health_cached_at = now
        return self._health_cache

    def validate_execution(
        self,
        *,
        amount_usd: float,
        concurrent_executions: int = 0,
        daily_executions: int = 0,
    ) -> ValidationResult:
        policy = self.policy
        if amount_usd > policy.max_amount_usd:
            return ValidationResult(False, reason=f"Amount exceeds maximum limit of ${policy.max_amount_usd:g}")
        if concurrent_executions >= policy.max_concurrent_executions:
            return ValidationResult(
                False,
                reason=f"Too many concurrent executions ({concurrent_executions}/{policy.max_concurrent_executions})",
            )
        if daily_executions >= policy.max_daily_executions:
            return ValidationResult(
                False,
                reason=f"Daily execution limit reached ({daily_executions}/{policy.max_daily_executions})",
            )
        return ValidationResult(True, requires_approval=amount_usd > policy.require_approval_over_usd)

    def update_policy(self, updates: dict[str, Any]) -> SafetyPolicy:
        known = {item.name for item in fields(SafetyPolicy)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown safety policy fields: {', '.join(sorted(unknown))}")
        for key, value in updates.items():
            setattr(self.policy, key, type(getattr(self.policy, key))(value))
        log_event(logger, "safety_policy_updated", policy=asdict(self.policy))
        return self.policy

    def reset_all_circuit_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        self._health_cache = None

    def service_metrics(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.metrics() for name, breaker in self._breakers.items()}
