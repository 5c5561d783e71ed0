from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pandas as pd
import pytest

from marketsim.backtest.clock import VirtualClock
from marketsim.backtest.feed import EventFeed, HistoricalEventFeed
from marketsim.backtest.market import Market
from marketsim.backtest.portfolio import Ledger
from marketsim.backtest.prices import HistoricalPriceStore, PriceStore
from marketsim.backtest.session import SessionPhase, SessionStateMachine

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def start():
    return EPOCH


@pytest.fixture
def minute_bars():
    """Builds one bar per minute from the epoch with the given closing prices."""

    def _bars(*closes: float) -> pd.DataFrame:
        index = pd.date_range(start=EPOCH, periods=len(closes), freq="1min")
        return pd.DataFrame(
            {
                "open": list(closes),
                "high": list(closes),
                "low": list(closes),
                "close": list(closes),
                "volume": [1000] * len(closes),
            },
            index=index,
        )

    return _bars


@pytest.fixture
def stock_prices(minute_bars):
    # STOCK trades at 1.0 during the first minute and 2.0 afterwards
    return HistoricalPriceStore({"STOCK": minute_bars(1.0, 2.0)})


@pytest.fixture
def empty_feed():
    return HistoricalEventFeed([])


@pytest.fixture
def store_stub():
    """Price store that records calls and never has a price."""
    store = AsyncMock(spec=PriceStore)
    store.lookup.return_value = []
    return store


@pytest.fixture
def feed_stub():
    feed = AsyncMock(spec=EventFeed)
    feed.next_boundary_event.return_value = None
    return feed


@pytest.fixture
def make_market(stock_prices, empty_feed, start):
    """Market factory; markets default to an open REGULAR session."""

    def _make(prices=None, feed=None, cash=100.0, phase=SessionPhase.REGULAR, start_time=None):
        return Market(
            prices=prices or stock_prices,
            feed=feed or empty_feed,
            clock=VirtualClock(start_time or start),
            session=SessionStateMachine(phase),
            ledger=Ledger(cash),
        )

    return _make
