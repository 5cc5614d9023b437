"""Per-user provider wallets and named payment contacts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from stablepay.db.base_class import Base


class Wallet(Base):
    """Provider-side wallet holding a user's balance on one chain."""

    __tablename__ = "wallets"
    __table_args__ = (UniqueConstraint("user_id", "chain", name="uq_wallet_user_chain"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_wallet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )


class Contact(Base):
    """Named destination address that rules can reference instead of a raw address."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_contact_user_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
