"""Transfer rule and execution models.

Invariants:
- Execution.idempotency_key is unique; the constraint is the final guard against double execution.
- Only ACTIVE rules are ever selected for triggering.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Numeric, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stablepay.db.base_class import Base

JSON_COMPATIBLE = JSON().with_variant(JSONB, "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleType(str, enum.Enum):
    SCHEDULE = "schedule"
    CONDITIONAL = "conditional"


class RuleStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class ExecutionStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Rule(Base):
    """User-owned transfer automation triggered by a cron schedule or an FX condition."""

    __tablename__ = "rules"
    __table_args__ = (Index("ix_rules_status_next_run_at", "status", "next_run_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(200))
    type: Mapped[RuleType] = mapped_column(
        Enum(RuleType, name="rule_type", values_callable=lambda enum_cls: [e.value for e in enum_cls]),
        nullable=False,
    )
    status: Mapped[RuleStatus] = mapped_column(
        Enum(RuleStatus, name="rule_status", values_callable=lambda enum_cls: [e.value for e in enum_cls]),
        default=RuleStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    body: Mapped[dict] = mapped_column(JSON_COMPATIBLE, nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pause_reason: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    executions = relationship("Execution", back_populates="rule", cascade="all, delete-orphan")


class Execution(Base):
    """One attempt to carry out a rule's transfer, keyed by its trigger occurrence."""

    __tablename__ = "executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus, name="execution_status", values_callable=lambda enum_cls: [e.value for e in enum_cls]),
        default=ExecutionStatus.PENDING,
        nullable=False,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    triggered_by: Mapped[str | None] = mapped_column(String(32))
    chain: Mapped[str | None] = mapped_column(String(32))
    fee_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    amount_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    tx_hash: Mapped[str | None] = mapped_column(String(128))
    transfer_id: Mapped[str | None] = mapped_column(String(128))
    wallet_id: Mapped[str | None] = mapped_column(String(128))
    error_kind: Mapped[str | None] = mapped_column(String(32))
    error_message: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    rule = relationship("Rule", back_populates="executions")
