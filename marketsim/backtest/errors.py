"""Exception hierarchy raised by the market simulator.

Five families, all rooted at :class:`MarketError`:

- ``ProtocolError``: the clock, the session phase and the event feed have
  drifted apart. The run cannot continue and should be aborted.
- ``TemporalError``: the caller asked for data beyond the current instant.
- ``MarketDataError``: historical data is missing or malformed.
- ``TradingError``: a well-formed order was rejected.
- ``CollaboratorError``: the price store or event feed failed to answer.

Drivers abort on ``ProtocolError`` and ``CollaboratorError`` and let the
strategy decide what to do with ``TradingError`` and ``MarketDataError``.
"""

from datetime import datetime, timedelta
from typing import Any, Optional


class MarketError(Exception):
    """Base class for every error raised by the simulator."""


# --- Protocol ---


class ProtocolError(MarketError):
    pass


class MarketTimeSkip(ProtocolError):
    """A session event arrived that the current phase cannot accept."""

    def __init__(self, event: Any, phase: Any):
        self.event = event
        self.phase = phase
        super().__init__(f"Session event {event} cannot follow phase {phase}")


class InvalidTickGranularity(ProtocolError):
    def __init__(self, duration: timedelta, time: datetime):
        self.duration = duration
        self.time = time
        super().__init__(f"Cannot truncate {time.isoformat()} to ticks of {duration}")


class ReentrantCall(ProtocolError):
    def __init__(self, operation: str, outstanding: str):
        self.operation = operation
        self.outstanding = outstanding
        super().__init__(
            f"Cannot start {operation} while {outstanding} is still outstanding"
        )


# --- Temporal ---


class TemporalError(MarketError):
    pass


class FutureQuery(TemporalError):
    def __init__(self, requested: datetime, current: datetime):
        self.requested = requested
        self.current = current
        super().__init__(
            f"Tried to query data from {requested.isoformat()} at {current.isoformat()}"
        )


# --- Market Data ---


class MarketDataError(MarketError):
    pass


class UnknownPrice(MarketDataError):
    def __init__(self, symbol: str, as_of: Optional[datetime] = None):
        self.symbol = symbol
        self.as_of = as_of
        when = f" at or before {as_of.isoformat()}" if as_of else ""
        super().__init__(f"No known price for {symbol}{when}")


class MalformedFeedEntry(MarketDataError):
    """The event feed returned a value outside the expected vocabulary."""

    def __init__(self, value: Any, expected_kind: str):
        self.value = value
        self.expected_kind = expected_kind
        super().__init__(
            f"Value {value!r} found in the feed, which is not of the expected kind, "
            f"{expected_kind}"
        )


class MalformedPriceEntry(MarketDataError):
    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Malformed price entry for {symbol}: {reason}")


# --- Trading ---


class TradingError(MarketError):
    pass


class UntimelyTrade(TradingError):
    def __init__(self, symbol: str, time: datetime):
        self.symbol = symbol
        self.time = time
        super().__init__(
            f"Attempted to trade {symbol} at {time.isoformat()}, outside of trading hours"
        )


class InsufficientCash(TradingError):
    def __init__(self, quantity: int, symbol: str, total: float, cash: float):
        self.quantity = quantity
        self.symbol = symbol
        self.total = total
        self.cash = cash
        super().__init__(
            f"Cannot buy {quantity} shares of {symbol} for {total} with {cash} in cash"
        )


class InsufficientShares(TradingError):
    def __init__(self, quantity: int, symbol: str, owned: int):
        self.quantity = quantity
        self.symbol = symbol
        self.owned = owned
        super().__init__(
            f"Cannot sell {quantity} shares of {symbol} because only {owned} shares are owned"
        )


class InvalidQuantity(TradingError):
    def __init__(self, symbol: str, quantity: Any):
        self.symbol = symbol
        self.quantity = quantity
        super().__init__(
            f"Order quantity for {symbol} must be a positive whole number, got {quantity!r}"
        )


# --- Collaborators ---


class CollaboratorError(MarketError):
    """The price store or event feed failed; the cause is chained."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        symbol: Optional[str] = None,
        time: Optional[datetime] = None,
    ):
        self.query = query
        self.symbol = symbol
        self.time = time

        context = []
        if symbol is not None:
            context.append(f"symbol={symbol}")
        if time is not None:
            context.append(f"time={time.isoformat()}")
        if query is not None:
            context.append(f"query={query!r}")
        suffix = f" ({', '.join(context)})" if context else ""
        super().__init__(f"{message}{suffix}")
