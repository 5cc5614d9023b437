"""Best-effort audit trail for rule, execution, and admin events.

Invariants:
- ``log_event`` never raises; a failure to record is reported at debug level only.
"""

from __future__ import annotations

import enum
import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("stablepay.audit")


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class AuditLogger:
    def __init__(self, *, max_events: int = 500) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)

    def log_event(
        self,
        action: str,
        *,
        category: str,
        severity: Severity = Severity.LOW,
        user_id: str | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        **metadata: Any,
    ) -> None:
        try:
            event = {
                "audit": f"{category}:{action}",
                "severity": severity.value,
                "user_id": user_id,
                "resource": resource,
                "resource_id": resource_id,
                "metadata": metadata,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            logger.log(_LEVELS[severity], json.dumps(event, default=str))
            self._events.append(event)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Failed to record audit event %s: %s", action, exc)

    def recent(self, limit: int = 50, *, min_severity: Severity | None = None) -> list[dict[str, Any]]:
        order = list(Severity)
        events = list(self._events)
        if min_severity is not None:
            floor = order.index(min_severity)
            events = [event for event in events if order.index(Severity(event["severity"])) >= floor]
        return events[-limit:][::-1]
