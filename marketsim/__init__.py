"""marketsim: a no-lookahead securities market simulator for backtesting."""

from marketsim.backtest.market import Market

__version__ = "0.1.0"

__all__ = ["Market"]
