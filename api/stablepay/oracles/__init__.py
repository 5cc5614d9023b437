"""Cached market-data oracles with breaker protection and static fallbacks."""

from stablepay.oracles.fx import FxOracle, FxQuote
from stablepay.oracles.gas import GasEstimate, GasOracle, GasPrice

__all__ = ["FxOracle", "FxQuote", "GasEstimate", "GasOracle", "GasPrice"]
