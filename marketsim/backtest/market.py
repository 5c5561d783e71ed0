"""The simulated market a strategy drives.

Composes the virtual clock, session state machine, event-merge engine,
price oracle and ledger into a single object. One ``Market`` is one
backtest: its state is owned by the instance and its suspending operations
must be awaited one at a time. The price store and event feed it reads
from may be shared by many markets.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from marketsim.backtest.clock import VirtualClock
from marketsim.backtest.engine import EventMergeEngine
from marketsim.backtest.errors import ReentrantCall
from marketsim.backtest.events import SessionEvent
from marketsim.backtest.execution import SimulatedExecutionHandler
from marketsim.backtest.feed import EventFeed, QuestDBEventFeed
from marketsim.backtest.portfolio import Ledger
from marketsim.backtest.prices import PriceOracle, PriceStore, QuestDBPriceStore
from marketsim.backtest.session import SessionPhase, SessionStateMachine
from marketsim.core.config import Settings
from marketsim.core.models import PriceQuote, TradeFill
from marketsim.infra.database.questdb import QuestDBClient

logger = logging.getLogger(__name__)


class Market:
    """
    Backtest market over a price store and a session event feed.

    Example:
        market = Market.open(prices, feed, start_time=start, initial_cash=10_000.0)
        await market.next_event()
        for _ in range(390):
            await market.next_event_or_tick(timedelta(minutes=1))
            if market.session_phase().is_open:
                await market.buy_at_market("QQQM", 10)
    """

    def __init__(
        self,
        prices: PriceStore,
        feed: EventFeed,
        clock: VirtualClock,
        session: SessionStateMachine,
        ledger: Ledger,
    ):
        self.clock = clock
        self.session = session
        self.ledger = ledger

        self.engine = EventMergeEngine(feed, clock, session)
        self.oracle = PriceOracle(prices, clock)
        self.execution = SimulatedExecutionHandler(ledger, self.oracle, session, clock)

        self._outstanding: Optional[str] = None

    @classmethod
    def open(
        cls,
        prices: PriceStore,
        feed: EventFeed,
        start_time: datetime,
        initial_cash: float,
    ) -> "Market":
        """Start a simulation at ``start_time`` holding only ``initial_cash``."""
        market = cls(
            prices=prices,
            feed=feed,
            clock=VirtualClock(start_time),
            session=SessionStateMachine(SessionPhase.UNKNOWN),
            ledger=Ledger(initial_cash),
        )
        logger.info(
            f"🚀 Market opened at {market.time().isoformat()} with ${market.cash():.2f}"
        )
        return market

    @classmethod
    def from_questdb(
        cls,
        client: QuestDBClient,
        start_time: datetime,
        initial_cash: float,
        settings: Optional[Settings] = None,
    ) -> "Market":
        settings = settings or client.settings
        return cls.open(
            QuestDBPriceStore(client, settings),
            QuestDBEventFeed(client, settings),
            start_time,
            initial_cash,
        )

    @contextmanager
    def _exclusive(self, operation: str):
        if self._outstanding is not None:
            raise ReentrantCall(operation, self._outstanding)
        self._outstanding = operation
        try:
            yield
        finally:
            self._outstanding = None

    # --- Timeline ---

    async def next_event(self) -> Optional[SessionEvent]:
        with self._exclusive("next_event"):
            return await self.engine.next_event()

    async def next_event_or_tick(self, tick_duration: timedelta) -> SessionEvent:
        with self._exclusive("next_event_or_tick"):
            return await self.engine.next_event_or_tick(tick_duration)

    def time(self) -> datetime:
        return self.clock.now

    def session_phase(self) -> SessionPhase:
        return self.session.phase

    # --- Prices ---

    async def price_at(self, symbol: str, time: datetime) -> float:
        with self._exclusive("price_at"):
            return await self.oracle.price_at(symbol, time)

    async def current_price(self, symbol: str) -> float:
        with self._exclusive("current_price"):
            return await self.oracle.current_price(symbol)

    async def recent_prices(self, symbol: str, limit: int) -> List[PriceQuote]:
        with self._exclusive("recent_prices"):
            return await self.oracle.recent_prices(symbol, limit)

    # --- Trading ---

    async def buy_at_market(self, symbol: str, quantity: int) -> TradeFill:
        with self._exclusive("buy_at_market"):
            return await self.execution.buy_at_market(symbol, quantity)

    async def sell_at_market(self, symbol: str, quantity: int) -> TradeFill:
        with self._exclusive("sell_at_market"):
            return await self.execution.sell_at_market(symbol, quantity)

    async def net_worth(self) -> float:
        with self._exclusive("net_worth"):
            return await self.execution.net_worth()

    def cash(self) -> float:
        return self.ledger.cash

    def shares_of(self, symbol: str) -> int:
        return self.ledger.shares_of(symbol)

    def holdings(self) -> Dict[str, int]:
        return dict(self.ledger.holdings)

    def __repr__(self) -> str:
        return (
            f"Market(time={self.time().isoformat()}, phase={self.session_phase().value}, "
            f"{self.ledger!r})"
        )
