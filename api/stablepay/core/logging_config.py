"""Process-level logging setup and structured event helpers."""

from __future__ import annotations

import json
import logging
from typing import Any

from stablepay.core.config import settings

LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=level or settings.log_level, format=LOG_FORMAT, force=True)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **payload: Any) -> None:
    """Emit a single JSON line with an ``event`` key followed by the payload."""
    logger.log(level, json.dumps({"event": event, **payload}, default=str))
