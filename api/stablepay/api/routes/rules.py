"""Manual rule triggering and route quoting endpoints."""

from __future__ import annotations

import secrets
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from stablepay.api.deps import get_db, get_services
from stablepay.container import ServiceContainer
from stablepay.models import Execution, Rule, RuleStatus
from stablepay.schema.rule import ExecutionRead, RouteQuote, RouteQuoteRequest, RuleBody
from stablepay.services.router import RouteFlags, quote_routes
from stablepay.services.task_queue import ExecutionJob
from stablepay.utils.datetime import to_epoch_ms, utcnow

router = APIRouter()


@router.post("/route-quote", response_model=list[RouteQuote])
async def route_quote(payload: RouteQuoteRequest) -> list[RouteQuote]:
    """Quote every allowed chain for the routing preferences, best first."""
    return quote_routes(payload.routing, RouteFlags(congestion_multiplier=payload.congestion_multiplier))


@router.post("/{rule_id}/execute-now", status_code=status.HTTP_202_ACCEPTED)
async def execute_now(
    rule_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    """Enqueue an immediate execution of an active rule.

    In fallback mode the execution has finished by the time this returns and
    the response carries the resulting Execution.
    """
    rule = await session.get(Rule, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    if rule.status != RuleStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Rule is {rule.status.value}")
    try:
        RuleBody.model_validate(rule.body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Rule body is invalid") from exc

    key = f"manual-{rule_id}-{to_epoch_ms(utcnow())}-{secrets.token_hex(4)}"
    descriptor = await services.task_queue.add_execute_rule_job(
        ExecutionJob(rule_id=str(rule_id), idempotency_key=key, triggered_by="manual")
    )
    response: dict = {"job": descriptor.as_dict(), "idempotency_key": key}
    execution = await services.engine.find_execution(key)
    if execution is not None:
        response["execution"] = ExecutionRead.model_validate(execution).model_dump(mode="json")
    return response
