"""FastAPI application entrypoint and health reporting.

Invariants:
- Every request passes through the timing middleware so monitoring sees real latency.
- Startup never fails on a missing broker; the queue starts inline instead.
"""

import time
from typing import Any

from fastapi import FastAPI, Request

from stablepay.api.router import api_router
from stablepay.container import get_container
from stablepay.core.config import settings
from stablepay.jobs.schedule_registry import ensure_schedules

app = FastAPI(title=settings.app_name)
app.include_router(api_router, prefix=settings.api_prefix)


@app.middleware("http")
async def _track_requests(request: Request, call_next):
    stats = get_container().monitoring.request_stats
    stats.started()
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        stats.finished((time.perf_counter() - started) * 1000, status_code)


@app.on_event("startup")
async def _bootstrap_queue() -> None:
    """Probe the broker and register periodic jobs on startup."""
    container = get_container()
    container.task_queue.bootstrap()
    ensure_schedules(container.task_queue)


@app.get("/health", tags=["internal"])
@app.get(f"{settings.api_prefix}/health", tags=["internal"])
async def health() -> dict[str, Any]:
    """Liveness plus the two signals operators act on first."""
    container = get_container()
    safe = container.safety.is_system_safe()
    return {
        "status": "ok" if safe else "degraded",
        "queue_mode": container.task_queue.mode,
        "system_safe": safe,
    }
