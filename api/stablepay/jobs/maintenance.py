"""Maintenance jobs for dead-letter retention."""

from __future__ import annotations

import logging

from stablepay.container import get_container
from stablepay.core.config import settings

logger = logging.getLogger("stablepay.jobs.maintenance")


def cleanup_dlq_job(older_than_days: int | None = None) -> dict[str, int]:
    """Scheduled cleanup of dead-letter entries past the retention window."""
    dlq = get_container().dlq
    if dlq is None:
        logger.info("Skipping DLQ cleanup; no broker configured")
        return {"removed": 0}
    removed = dlq.cleanup_old_entries(older_than_days or settings.dlq_ttl_days)
    return {"removed": removed}
