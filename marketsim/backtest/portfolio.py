import math
from typing import Dict


class Ledger:
    """Simulated cash and share holdings of one backtest.

    Tracks cash and positions. Callers validate before they mutate, so
    ``debit`` and ``credit`` only guard against misuse and never see a
    rejected business request.

    Attributes:
        cash (float): Available cash balance, never negative.
        holdings (Dict[str, int]): Shares owned per symbol (e.g., {'AAPL': 100}).
            Symbols whose count drops to zero are removed.
    """

    def __init__(self, initial_cash: float = 100000.0):
        if not math.isfinite(initial_cash) or initial_cash < 0:
            raise ValueError(f"Initial cash must be a non-negative amount, got {initial_cash}")

        self.cash = float(initial_cash)
        self.holdings: Dict[str, int] = {}

    def shares_of(self, symbol: str) -> int:
        return self.holdings.get(symbol, 0)

    def can_afford(self, total: float) -> bool:
        return total <= self.cash

    def debit(self, total: float, symbol: str, quantity: int) -> None:
        """Pays ``total`` for ``quantity`` shares of ``symbol``."""
        if total < 0 or total > self.cash:
            raise ValueError(f"Cannot debit {total} from {self.cash}")

        self.cash -= total
        self.holdings[symbol] = self.holdings.get(symbol, 0) + quantity

    def credit(self, total: float, symbol: str, quantity: int) -> None:
        """Receives ``total`` for ``quantity`` shares of ``symbol``."""
        owned = self.holdings.get(symbol, 0)
        if total < 0 or quantity > owned:
            raise ValueError(f"Cannot sell {quantity} of {owned} {symbol} shares for {total}")

        self.cash += total
        remaining = owned - quantity
        if remaining:
            self.holdings[symbol] = remaining
        else:
            del self.holdings[symbol]

    def __repr__(self) -> str:
        return f"Ledger(cash={self.cash:.2f}, holdings={self.holdings})"
