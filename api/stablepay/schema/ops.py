"""Admin action payloads for health and dead-letter management."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field


class HealthAction(BaseModel):
    action: Literal["resolve-alert", "update-alert-rule", "reset-circuit-breakers", "update-safety-policy"]
    alert_id: str | None = None
    rule_id: str | None = None
    updates: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("updates", "policy"))


class BatchRetryCriteria(BaseModel):
    queue: str | None = None
    error_pattern: str | None = None
    max_age_hours: float | None = Field(default=None, gt=0)


class DLQAction(BaseModel):
    action: Literal["retry-job", "remove-job", "batch-retry", "cleanup"]
    dlq_id: str | None = None
    delay_ms: int = Field(default=0, ge=0)
    priority: int | None = None
    remove_from_dlq: bool = True
    criteria: BatchRetryCriteria = Field(default_factory=BatchRetryCriteria)
    limit: int = Field(default=10, ge=1, le=500)
    older_than_days: int = Field(default=30, ge=1)
