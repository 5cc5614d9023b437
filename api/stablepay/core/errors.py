"""Tagged error types shared by the execution pipeline and the dead-letter queue.

Invariants:
- Every failure that crosses the worker boundary carries an ErrorKind set where it was raised.
- Message inspection is only a last resort for errors raised by foreign code.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    POLICY_BLOCKED = "POLICY_BLOCKED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


# Kinds that a blind replay cannot fix; recovery goes through auto-pause or user action.
NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.INSUFFICIENT_FUNDS,
        ErrorKind.INVALID_ADDRESS,
        ErrorKind.NOT_FOUND,
        ErrorKind.RATE_LIMITED,
        ErrorKind.POLICY_BLOCKED,
    }
)

PROVIDER_CODE_KINDS: dict[str, ErrorKind] = {
    "INSUFFICIENT_FUNDS": ErrorKind.INSUFFICIENT_FUNDS,
    "INVALID_DESTINATION": ErrorKind.INVALID_ADDRESS,
    "INVALID_ADDRESS": ErrorKind.INVALID_ADDRESS,
    "NOT_FOUND": ErrorKind.NOT_FOUND,
    "WALLET_NOT_FOUND": ErrorKind.NOT_FOUND,
    "RATE_LIMIT_EXCEEDED": ErrorKind.RATE_LIMITED,
}

_MESSAGE_HINTS: tuple[tuple[str, ErrorKind], ...] = (
    ("insufficient balance", ErrorKind.INSUFFICIENT_FUNDS),
    ("insufficient funds", ErrorKind.INSUFFICIENT_FUNDS),
    ("invalid address", ErrorKind.INVALID_ADDRESS),
    ("invalid destination", ErrorKind.INVALID_ADDRESS),
    ("not found", ErrorKind.NOT_FOUND),
    ("rate limit", ErrorKind.RATE_LIMITED),
)


class RuleExecutionError(RuntimeError):
    """Failure raised inside the execution pipeline with its classification attached."""

    def __init__(self, kind: ErrorKind, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind not in NON_RETRYABLE_KINDS if retryable is None else retryable

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class PaymentProviderError(RuntimeError):
    """Error returned by the wallet/transfer provider, keyed by its error code."""

    def __init__(self, code: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class CircuitBreakerError(RuntimeError):
    """Raised when a breaker rejects a call without invoking the protected operation."""

    def __init__(self, service: str, metrics: dict[str, Any]) -> None:
        super().__init__(f"Circuit breaker is OPEN for {service}")
        self.service = service
        self.metrics = metrics
        self.retryable = True


class CircuitBreakerNotFoundError(KeyError):
    """Raised when a protected call names a service with no configured breaker."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Circuit breaker not found for service: {service}")
        self.service = service


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an ErrorKind, preferring tags over message text."""
    if isinstance(exc, RuleExecutionError):
        return exc.kind
    if isinstance(exc, PaymentProviderError):
        kind = PROVIDER_CODE_KINDS.get(exc.code)
        if kind:
            return kind
    lowered = str(exc).lower()
    for hint, kind in _MESSAGE_HINTS:
        if hint in lowered:
            return kind
    return ErrorKind.SYSTEM_ERROR


def is_retryable(exc: BaseException) -> bool:
    """Return the retry flag set at the raise site, or derive one from the classification."""
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag
    return classify_error(exc) not in NON_RETRYABLE_KINDS
