"""Payment provider interface and the in-memory mock used outside production.

Invariants:
- Transfers are idempotent on their idempotency key: a repeated key returns the
  original transfer and moves no funds.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from stablepay.core.errors import PaymentProviderError

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

TRANSFER_TIMES_MINUTES: dict[str, dict[str, float]] = {
    "ethereum": {"min": 1, "max": 8, "typical": 3},
    "polygon": {"min": 0.5, "max": 3, "typical": 1},
    "arbitrum": {"min": 0.5, "max": 2, "typical": 1},
    "base": {"min": 0.3, "max": 1.5, "typical": 0.8},
}
CROSS_CHAIN_MINUTES = {"min": 8, "max": 25, "typical": 15}


@dataclass
class ProviderWallet:
    id: str
    user_id: str
    chain: str
    address: str
    balances: dict[str, Decimal] = field(default_factory=dict)


@dataclass
class ProviderTransfer:
    id: str
    wallet_id: str
    destination_address: str
    amount: Decimal
    asset: str
    chain: str
    idempotency_key: str
    status: str = "pending"
    tx_hash: str | None = None
    error_code: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaymentProvider(Protocol):
    async def create_wallet(self, user_id: str, chain: str) -> ProviderWallet: ...

    async def transfer_usdc(
        self,
        *,
        wallet_id: str,
        destination_address: str,
        amount: Decimal,
        chain: str,
        idempotency_key: str,
        asset: str = "USDC",
    ) -> ProviderTransfer: ...

    def validate_address(self, address: str, chain: str) -> bool: ...

    async def estimate_transfer_time(self, chain: str, destination_chain: str | None = None) -> dict[str, float]: ...

    async def refresh_wallet_balance(self, wallet_id: str) -> ProviderWallet: ...

    async def get_transfer(self, transfer_id: str) -> ProviderTransfer: ...


def _hex(length: int) -> str:
    return secrets.token_hex(length // 2)


class MockPaymentProvider:
    """Deterministic in-memory provider; balances are set explicitly, never randomized."""

    def __init__(self, *, default_balance: Decimal | str = "1000", settle_immediately: bool = True) -> None:
        self.default_balance = Decimal(str(default_balance))
        self.settle_immediately = settle_immediately
        self.wallets: dict[str, ProviderWallet] = {}
        self.transfers: dict[str, ProviderTransfer] = {}
        self._transfers_by_key: dict[str, str] = {}
        self._pending_failures: list[PaymentProviderError] = []
        self.transfer_calls = 0

    def fail_next(self, error: PaymentProviderError) -> None:
        """Make the next transfer call raise ``error``."""
        self._pending_failures.append(error)

    def set_balance(self, wallet_id: str, amount: Decimal | str, asset: str = "USDC") -> None:
        self.wallets[wallet_id].balances[asset] = Decimal(str(amount))

    async def create_wallet(self, user_id: str, chain: str) -> ProviderWallet:
        wallet = ProviderWallet(
            id=f"mock-wallet-{_hex(16)}",
            user_id=user_id,
            chain=chain,
            address=f"0x{_hex(40)}",
            balances={"USDC": self.default_balance, "EURC": self.default_balance},
        )
        self.wallets[wallet.id] = wallet
        return wallet

    async def get_wallet(self, wallet_id: str) -> ProviderWallet:
        wallet = self.wallets.get(wallet_id)
        if wallet is None:
            raise PaymentProviderError("WALLET_NOT_FOUND", f"Wallet {wallet_id} not found")
        return wallet

    async def refresh_wallet_balance(self, wallet_id: str) -> ProviderWallet:
        return await self.get_wallet(wallet_id)

    async def transfer_usdc(
        self,
        *,
        wallet_id: str,
        destination_address: str,
        amount: Decimal,
        chain: str,
        idempotency_key: str,
        asset: str = "USDC",
    ) -> ProviderTransfer:
        self.transfer_calls += 1
        existing = self._transfers_by_key.get(idempotency_key)
        if existing:
            return self.transfers[existing]
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        if not self.validate_address(destination_address, chain):
            raise PaymentProviderError("INVALID_DESTINATION", f"Invalid destination address {destination_address}")
        wallet = await self.get_wallet(wallet_id)
        balance = wallet.balances.get(asset, Decimal("0"))
        if amount > balance:
            raise PaymentProviderError("INSUFFICIENT_FUNDS", f"Insufficient balance: {balance} < {amount}")
        wallet.balances[asset] = balance - amount
        transfer = ProviderTransfer(
            id=f"mock-transfer-{_hex(16)}",
            wallet_id=wallet_id,
            destination_address=destination_address,
            amount=amount,
            asset=asset,
            chain=chain,
            idempotency_key=idempotency_key,
        )
        if self.settle_immediately:
            transfer.status = "complete"
            transfer.tx_hash = f"0x{_hex(64)}"
        self.transfers[transfer.id] = transfer
        self._transfers_by_key[idempotency_key] = transfer.id
        return transfer

    async def get_transfer(self, transfer_id: str) -> ProviderTransfer:
        transfer = self.transfers.get(transfer_id)
        if transfer is None:
            raise PaymentProviderError("NOT_FOUND", f"Transfer {transfer_id} not found")
        return transfer

    def validate_address(self, address: str, chain: str) -> bool:
        return bool(ADDRESS_PATTERN.match(address or ""))

    async def estimate_transfer_time(self, chain: str, destination_chain: str | None = None) -> dict[str, float]:
        if destination_chain and destination_chain != chain:
            return dict(CROSS_CHAIN_MINUTES)
        return dict(TRANSFER_TIMES_MINUTES.get(chain, {"min": 1, "max": 5, "typical": 2}))
