"""Deterministic fee/ETA quoting across a rule's allowed chains.

Invariants:
- Quoting performs no I/O; identical inputs always produce identical quotes.
- Exactly one quote in a non-empty result is flagged ``recommended`` and it is first.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from stablepay.schema.rule import RouteQuote, Routing
from stablepay.services.chains import ChainInfo, get_chain

# Confirmations assumed before a transfer is considered settled.
CONFIRMATION_BLOCKS = 3


@dataclass(frozen=True)
class RouteFlags:
    congestion_multiplier: float = 1.0


def _fee_usd(chain: ChainInfo, flags: RouteFlags) -> float:
    raw = Decimal(str(chain.base_fee_usd)) * Decimal(str(flags.congestion_multiplier))
    raw *= Decimal("1") + Decimal(str(chain.utilization)) * Decimal("0.5")
    return float(raw.quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def _eta_seconds(chain: ChainInfo, flags: RouteFlags) -> int:
    base_eta = chain.block_time * CONFIRMATION_BLOCKS
    delay = base_eta * 0.5 if flags.congestion_multiplier > 1.5 else 0
    return max(round(base_eta + delay), 1)


def _explain(chain: ChainInfo, fee: float, eta: int, congested: bool) -> str:
    eta_text = f"{eta}s" if eta < 60 else f"{round(eta / 60)}min"
    if chain.utilization > 0.8:
        activity = "High network activity"
    elif chain.utilization > 0.6:
        activity = "Moderate activity"
    else:
        activity = "Low activity"
    congestion = " (congested)" if congested else ""
    return f"{chain.name}: ${fee} fee{congestion}. {chain.blurb}. {activity}. ETA: {eta_text}"


def quote_chain(chain_key: str, flags: RouteFlags | None = None) -> RouteQuote:
    flags = flags or RouteFlags()
    chain = get_chain(chain_key)
    fee = _fee_usd(chain, flags)
    eta = _eta_seconds(chain, flags)
    return RouteQuote(
        chain=chain.key,
        fee_estimate_usd=fee,
        eta_seconds=eta,
        explanation=_explain(chain, fee, eta, flags.congestion_multiplier > 1.2),
    )


def quote_routes(routing: Routing, flags: RouteFlags | None = None) -> list[RouteQuote]:
    """Quote every allowed chain ordered by the routing mode, best first.

    ``cheapest`` orders by fee then ETA, ``fastest`` by ETA then fee, and
    ``fixed`` keeps the declared order so the first allowed chain wins.
    """
    quotes = [quote_chain(chain, flags) for chain in _dedupe(routing.allowed_chains)]
    if routing.mode == "cheapest":
        quotes.sort(key=lambda quote: (quote.fee_estimate_usd, quote.eta_seconds))
    elif routing.mode == "fastest":
        quotes.sort(key=lambda quote: (quote.eta_seconds, quote.fee_estimate_usd))
    if quotes:
        quotes[0].recommended = True
    return quotes


def quote_cheapest(routing: Routing, flags: RouteFlags | None = None) -> RouteQuote:
    """Return the recommended quote for the routing preferences."""
    quotes = quote_routes(routing, flags)
    if not quotes:
        raise ValueError("No valid routes found")
    return quotes[0]


def _dedupe(chains: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for chain in chains:
        if chain not in seen:
            seen.append(chain)
    return seen
