"""Rule body, quote, and execution schemas.

Invariants:
- A rule body carries exactly one trigger: ``schedule`` for schedule rules, ``condition`` for conditional ones.
- Stored bodies are the snake_case ``model_dump(mode="json")`` of RuleBody.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, model_validator

from stablepay.models.rule import ExecutionStatus
from stablepay.schema.base import CamelModel, ORMModel

Chain = Literal["ethereum", "base", "arbitrum", "polygon"]
ALL_CHAINS: list[str] = ["ethereum", "base", "arbitrum", "polygon"]
WINDOW_ALIASES = {"1h": "1hour", "24h": "24hour"}


class Amount(CamelModel):
    value: Decimal = Field(gt=0)
    currency: Literal["USD", "EUR"] = "USD"


class Destination(CamelModel):
    type: Literal["address", "contact"]
    value: str = Field(min_length=1)


class Schedule(CamelModel):
    cron: str = Field(min_length=1)
    timezone: str = Field(default="UTC", validation_alias=AliasChoices("timezone", "tz"))


class Condition(CamelModel):
    metric: str = "EURUSD"
    change_direction: Literal["+%", "-%"] = Field(
        validation_alias=AliasChoices("change_direction", "changeDirection", "change")
    )
    magnitude_percent: float = Field(
        gt=0, validation_alias=AliasChoices("magnitude_percent", "magnitudePercent", "magnitude")
    )
    window: Literal["5min", "15min", "1hour", "24hour", "1h", "24h"] = "24h"

    @property
    def normalized_window(self) -> str:
        return WINDOW_ALIASES.get(self.window, self.window)


class Routing(CamelModel):
    mode: Literal["cheapest", "fastest", "fixed"] = "cheapest"
    allowed_chains: list[Chain] = Field(
        default_factory=lambda: list(ALL_CHAINS),
        min_length=1,
        validation_alias=AliasChoices("allowed_chains", "allowedChains"),
    )


class Limits(CamelModel):
    daily_max_usd: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("daily_max_usd", "dailyMaxUSD")
    )
    require_confirm_over_usd: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("require_confirm_over_usd", "requireConfirmOverUSD")
    )


class RuleBody(CamelModel):
    """Validated structure of a transfer rule."""

    type: Literal["schedule", "conditional"]
    asset: Literal["USDC", "EURC"] = "USDC"
    amount: Amount
    destination: Destination
    schedule: Schedule | None = None
    condition: Condition | None = None
    routing: Routing = Field(default_factory=Routing)
    limits: Limits = Field(default_factory=Limits)
    memo: str | None = None

    @model_validator(mode="after")
    def _exactly_one_trigger(self) -> "RuleBody":
        if self.type == "schedule" and (self.schedule is None or self.condition is not None):
            raise ValueError("schedule rules require a schedule and no condition")
        if self.type == "conditional" and (self.condition is None or self.schedule is not None):
            raise ValueError("conditional rules require a condition and no schedule")
        return self


class RouteQuote(BaseModel):
    chain: str
    fee_estimate_usd: float
    eta_seconds: int
    explanation: str
    recommended: bool = False


class RouteQuoteRequest(CamelModel):
    """Quote request; only the amount, asset, and routing parts of a rule matter."""

    asset: Literal["USDC", "EURC"] = "USDC"
    amount: Amount | None = None
    routing: Routing = Field(default_factory=Routing)
    congestion_multiplier: float = Field(default=1.0, gt=0)


class ExecutionRead(ORMModel):
    id: UUID
    rule_id: UUID
    status: ExecutionStatus
    idempotency_key: str
    triggered_by: str | None = None
    chain: str | None = None
    fee_usd: Decimal | None = None
    amount_usd: Decimal | None = None
    tx_hash: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
