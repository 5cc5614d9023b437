from __future__ import annotations

from fastapi import APIRouter, Depends

from stablepay.api.deps import get_services, require_admin
from stablepay.container import ServiceContainer

router = APIRouter()


@router.get("/queues", tags=["ops"], dependencies=[Depends(require_admin)])
async def queue_health(services: ServiceContainer = Depends(get_services)) -> dict:
    """
    Operations view of the job queue, its RQ registries and workers, and the cron scheduler.
    """
    snapshot = services.task_queue.snapshot()
    snapshot["scheduler"] = services.scheduler.get_status()
    return snapshot
