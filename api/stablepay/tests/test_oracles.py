from __future__ import annotations

import random

import pytest

from stablepay.oracles import FxOracle, GasOracle
from stablepay.oracles.fx import FxQuote
from stablepay.safety.controller import FX_ORACLE, GAS_ORACLE, SafetyController


class CountingFetcher:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.calls = 0
        self.result = result
        self.error = error

    async def __call__(self, key: str):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_fx_quotes_are_cached_until_expiry(ticker):
    safety = SafetyController(clock=ticker)
    fetcher = CountingFetcher(FxQuote("EURUSD", 1.09, 1.0899, 1.0901, 0.0002, 0.1, "feed", 95))
    oracle = FxOracle(safety, cache_seconds=60, fetcher=fetcher, clock=ticker)

    first = await oracle.get_rate("eurusd")
    await oracle.get_rate("EURUSD")
    assert fetcher.calls == 1
    assert first.rate == 1.09

    ticker.advance(60)
    await oracle.get_rate("EURUSD")
    assert fetcher.calls == 2
    assert oracle.cache_status()["size"] == 1


@pytest.mark.asyncio
async def test_fx_falls_back_and_trips_breaker(ticker):
    safety = SafetyController(clock=ticker)
    fetcher = CountingFetcher(error=ConnectionError("feed down"))
    oracle = FxOracle(safety, cache_seconds=0, fetcher=fetcher, clock=ticker)

    quote = await oracle.get_rate("EURUSD")
    await oracle.get_rate("EURUSD")
    assert quote.source == "fallback"
    assert quote.rate == 1.0850
    assert not safety.is_service_healthy(FX_ORACLE)

    await oracle.get_rate("EURUSD")
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_fx_unknown_pair_without_fallback(ticker):
    oracle = FxOracle(SafetyController(clock=ticker), fetcher=CountingFetcher(error=ValueError("nope")), clock=ticker)
    with pytest.raises(ValueError):
        await oracle.get_rate("CHFSEK")


@pytest.mark.asyncio
async def test_convert_currency_uses_reverse_pair(ticker):
    oracle = FxOracle(SafetyController(clock=ticker), fetcher=CountingFetcher(error=ConnectionError()), clock=ticker)
    converted = await oracle.convert_currency(100, "EUR", "USD")
    assert converted["converted_amount"] == pytest.approx(108.5)

    inverse = await oracle.convert_currency(108.5, "USD", "EUR")
    assert inverse["converted_amount"] == pytest.approx(100)
    assert oracle.supported_pairs() == ["EURUSD", "GBPUSD", "USDJPY"]


@pytest.mark.asyncio
async def test_simulated_fx_stays_near_fallback(ticker):
    oracle = FxOracle(SafetyController(clock=ticker), url="", clock=ticker, rng=random.Random(7))
    quote = await oracle.get_rate("GBPUSD")
    assert quote.source == "simulated"
    assert quote.rate == pytest.approx(1.2650, rel=0.0011)


@pytest.mark.asyncio
async def test_gas_estimates_and_cheapest_chain(ticker):
    safety = SafetyController(clock=ticker)
    oracle = GasOracle(
        safety, cache_seconds=30, eth_price_usd=2000, fetcher=CountingFetcher(error=TimeoutError()), clock=ticker
    )

    estimate = await oracle.estimate_transfer_cost("ethereum")
    assert estimate.gas_price_gwei == 20
    assert estimate.total_cost_usd == pytest.approx(20 * 65_000 / 1e9 * 2000)
    assert estimate.confidence == 70

    cheapest = await oracle.get_cheapest_chain()
    assert cheapest["chain"] == "base"
    excluded = await oracle.get_cheapest_chain(exclude=["base"])
    assert excluded["chain"] == "arbitrum"

    assert not safety.is_service_healthy(GAS_ORACLE)
    with pytest.raises(ValueError):
        await oracle.get_gas_price("solana")
