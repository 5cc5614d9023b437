"""initial engine schema

Revision ID: 20261018_000001
Revises: 
Create Date: 2026-10-18 00:00:01.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


rule_type_enum = postgresql.ENUM("schedule", "conditional", name="rule_type", create_type=False)
rule_status_enum = postgresql.ENUM("ACTIVE", "PAUSED", "FAILED", "COMPLETED", name="rule_status", create_type=False)
execution_status_enum = postgresql.ENUM(
    "PENDING",
    "PROCESSING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    name="execution_status",
    create_type=False,
)


def upgrade() -> None:
    """Create rules, executions, wallets, contacts and their enum types."""
    rule_type_enum.create(op.get_bind(), checkfirst=True)
    rule_status_enum.create(op.get_bind(), checkfirst=True)
    execution_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("type", rule_type_enum, nullable=False),
        sa.Column("status", rule_status_enum, nullable=False, server_default="ACTIVE"),
        sa.Column("body", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_rules"),
    )
    op.create_index("ix_rules_user_id", "rules", ["user_id"], unique=False)
    op.create_index("ix_rules_status", "rules", ["status"], unique=False)
    op.create_index("ix_rules_status_next_run_at", "rules", ["status", "next_run_at"], unique=False)

    op.create_table(
        "executions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", execution_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("triggered_by", sa.String(length=32), nullable=True),
        sa.Column("chain", sa.String(length=32), nullable=True),
        sa.Column("fee_usd", sa.Numeric(18, 6), nullable=True),
        sa.Column("amount_usd", sa.Numeric(18, 6), nullable=True),
        sa.Column("tx_hash", sa.String(length=128), nullable=True),
        sa.Column("transfer_id", sa.String(length=128), nullable=True),
        sa.Column("wallet_id", sa.String(length=128), nullable=True),
        sa.Column("error_kind", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["rule_id"], ["rules.id"], name="fk_executions_rule_id_rules", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_executions"),
        sa.UniqueConstraint("idempotency_key", name="uq_executions_idempotency_key"),
    )
    op.create_index("ix_executions_rule_id", "executions", ["rule_id"], unique=False)
    op.create_index("ix_executions_status", "executions", ["status"], unique=False)
    op.create_index("ix_executions_created_at", "executions", ["created_at"], unique=False)

    op.create_table(
        "wallets",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("chain", sa.String(length=32), nullable=False),
        sa.Column("provider_wallet_id", sa.String(length=128), nullable=False),
        sa.Column("address", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_wallets"),
        sa.UniqueConstraint("user_id", "chain", name="uq_wallet_user_chain"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=False)

    op.create_table(
        "contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("address", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_contacts"),
        sa.UniqueConstraint("user_id", "name", name="uq_contact_user_name"),
    )
    op.create_index("ix_contacts_user_id", "contacts", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_contacts_user_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_wallets_user_id", table_name="wallets")
    op.drop_table("wallets")
    op.drop_index("ix_executions_created_at", table_name="executions")
    op.drop_index("ix_executions_status", table_name="executions")
    op.drop_index("ix_executions_rule_id", table_name="executions")
    op.drop_table("executions")
    op.drop_index("ix_rules_status_next_run_at", table_name="rules")
    op.drop_index("ix_rules_status", table_name="rules")
    op.drop_index("ix_rules_user_id", table_name="rules")
    op.drop_table("rules")

    execution_status_enum.drop(op.get_bind(), checkfirst=True)
    rule_status_enum.drop(op.get_bind(), checkfirst=True)
    rule_type_enum.drop(op.get_bind(), checkfirst=True)
