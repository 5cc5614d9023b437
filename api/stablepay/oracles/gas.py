"""Per-chain gas price oracle with a 30s cache and a static fallback table."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Literal

from stablepay.core.config import settings
from stablepay.oracles.http import fetch_json
from stablepay.safety.controller import GAS_ORACLE, SafetyController
from stablepay.safety.circuit_breaker import Clock

logger = logging.getLogger("stablepay.oracles.gas")

Speed = Literal["slow", "standard", "fast", "instant"]


@dataclass(frozen=True)
class GasPrice:
    chain: str
    slow: float
    standard: float
    fast: float
    instant: float
    source: str = "fallback"
    last_updated: float = 0.0

    def tier(self, speed: Speed) -> float:
        return getattr(self, speed)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GasEstimate:
    chain: str
    gas_price_gwei: float
    gas_limit: int
    total_cost_eth: float
    total_cost_usd: float
    confidence: int
    source: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


FALLBACK_GAS_PRICES: dict[str, GasPrice] = {
    "ethereum": GasPrice("ethereum", 15, 20, 30, 50),
    "base": GasPrice("base", 0.01, 0.02, 0.05, 0.1),
    "arbitrum": GasPrice("arbitrum", 0.1, 0.2, 0.5, 1.0),
    "polygon": GasPrice("polygon", 30, 50, 100, 150),
}

# ERC-20 transfer gas limits per chain.
GAS_LIMITS = {"ethereum": 65_000, "base": 21_000, "arbitrum": 150_000, "polygon": 50_000}

Fetcher = Callable[[str], Awaitable[GasPrice]]


class GasOracle:
    def __init__(
        self,
        safety: SafetyController,
        *,
        url: str | None = None,
        cache_seconds: float | None = None,
        eth_price_usd: float | None = None,
        fetcher: Fetcher | None = None,
        clock: Clock = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._safety = safety
        self._url = url if url is not None else settings.gas_oracle_url
        self._cache_seconds = settings.gas_cache_seconds if cache_seconds is None else cache_seconds
        self._eth_price_usd = settings.eth_price_usd if eth_price_usd is None else eth_price_usd
        self._fetcher = fetcher or self._fetch
        self._clock = clock
        self._rng = rng or random.Random()
        self._cache: dict[str, GasPrice] = {}

    async def get_gas_price(self, chain: str) -> GasPrice:
        if chain not in FALLBACK_GAS_PRICES:
            raise ValueError(f"Unsupported chain: {chain}")
        now = self._clock()
        cached = self._cache.get(chain)
        if cached and now - cached.last_updated < self._cache_seconds:
            return cached
        try:
            price = await self._safety.execute_with_protection(GAS_ORACLE, lambda: self._fetcher(chain))
        except Exception as exc:
            logger.warning("Gas oracle failed for %s, using fallback: %s", chain, exc)
            price = FALLBACK_GAS_PRICES[chain]
        price = replace(price, last_updated=now)
        self._cache[chain] = price
        return price

    async def get_all_gas_prices(self) -> dict[str, GasPrice]:
        return {chain: await self.get_gas_price(chain) for chain in FALLBACK_GAS_PRICES}

    async def estimate_transfer_cost(self, chain: str, speed: Speed = "standard") -> GasEstimate:
        price = await self.get_gas_price(chain)
        gas_limit = GAS_LIMITS[chain]
        gwei = price.tier(speed)
        cost_eth = gwei * gas_limit / 1e9
        healthy = self._safety.is_service_healthy(GAS_ORACLE) and price.source != "fallback"
        return GasEstimate(
            chain=chain,
            gas_price_gwei=gwei,
            gas_limit=gas_limit,
            total_cost_eth=cost_eth,
            total_cost_usd=cost_eth * self._eth_price_usd,
            confidence=95 if healthy else 70,
            source=price.source,
        )

    async def get_cheapest_chain(self, exclude: list[str] | None = None) -> dict[str, Any]:
        excluded = set(exclude or [])
        estimates = [
            await self.estimate_transfer_cost(chain) for chain in FALLBACK_GAS_PRICES if chain not in excluded
        ]
        if not estimates:
            raise ValueError("No chains left to compare")
        estimates.sort(key=lambda item: item.total_cost_usd)
        savings = estimates[-1].total_cost_usd - estimates[0].total_cost_usd
        return {
            "chain": estimates[0].chain,
            "estimate": estimates[0].as_dict(),
            "savings_usd": savings if savings > 0.01 else None,
        }

    def cache_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "size": len(self._cache),
            "entries": [
                {"chain": chain, "age": round(now - price.last_updated, 3), "valid": now - price.last_updated < self._cache_seconds}
                for chain, price in sorted(self._cache.items())
            ],
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _fetch(self, chain: str) -> GasPrice:
        if self._url:
            payload = await fetch_json(self._url, params={"chain": chain})
            return GasPrice(
                chain=chain,
                slow=float(payload["slow"]),
                standard=float(payload["standard"]),
                fast=float(payload["fast"]),
                instant=float(payload["instant"]),
                source="oracle",
            )
        base = FALLBACK_GAS_PRICES[chain]
        variation = 0.8 + self._rng.random() * 0.4
        return GasPrice(
            chain=chain,
            slow=round(base.slow * variation, 2),
            standard=round(base.standard * variation, 2),
            fast=round(base.fast * variation, 2),
            instant=round(base.instant * variation, 2),
            source="simulated",
        )
