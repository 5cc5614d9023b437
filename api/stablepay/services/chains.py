"""Static catalog of supported settlement chains."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChainInfo:
    key: str
    name: str
    chain_id: int
    block_time: float
    base_fee_usd: float
    utilization: float
    explorer_url: str
    blurb: str


CHAINS: dict[str, ChainInfo] = {
    "ethereum": ChainInfo(
        "ethereum", "Ethereum", 1, 12, 15.0, 0.85, "https://etherscan.io", "Most secure option"
    ),
    "base": ChainInfo(
        "base", "Base", 8453, 2, 0.05, 0.45, "https://basescan.org", "Coinbase L2, excellent for USDC"
    ),
    "arbitrum": ChainInfo(
        "arbitrum", "Arbitrum One", 42161, 0.3, 0.5, 0.55, "https://arbiscan.io", "Optimistic rollup, fast and cheap"
    ),
    "polygon": ChainInfo(
        "polygon", "Polygon", 137, 2, 0.1, 0.65, "https://polygonscan.com", "PoS sidechain"
    ),
}


def get_chain(key: str) -> ChainInfo:
    try:
        return CHAINS[key]
    except KeyError:
        raise ValueError(f"Unsupported chain: {key}") from None
