"""Read-only FX and gas oracle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stablepay.api.deps import get_services
from stablepay.container import ServiceContainer

router = APIRouter()


@router.get("/fx")
async def fx_rates(
    pair: str | None = Query(default=None, description="Single pair such as EURUSD"),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    oracle = services.fx_oracle
    pairs = [pair.upper()] if pair else oracle.supported_pairs()
    quotes = {}
    for name in pairs:
        try:
            quotes[name] = (await oracle.get_rate(name)).as_dict()
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {
        "quotes": quotes,
        "simulated_conditions": {
            key: sample.rate for key, sample in services.condition_checker.get_fx_rates().items()
        },
        "cache": oracle.cache_status(),
    }


@router.get("/gas")
async def gas_prices(services: ServiceContainer = Depends(get_services)) -> dict:
    oracle = services.gas_oracle
    prices = await oracle.get_all_gas_prices()
    return {
        "prices": {chain: price.as_dict() for chain, price in prices.items()},
        "cheapest": await oracle.get_cheapest_chain(),
        "cache": oracle.cache_status(),
    }
