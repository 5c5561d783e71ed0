"""Price stores and the no-lookahead price oracle.

Stores answer "what was the price of SYMBOL at or before T?". The oracle
sits between the simulation and a store and refuses any question about an
instant after the virtual clock before the store is even asked, which is
what keeps lookahead bias out of a backtest.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd
from opentelemetry import trace

from marketsim.backtest.clock import VirtualClock
from marketsim.backtest.errors import FutureQuery, MalformedPriceEntry, UnknownPrice
from marketsim.core.config import Settings, settings as default_settings
from marketsim.core.models import PriceQuote
from marketsim.core.timeutils import ensure_utc, format_questdb
from marketsim.infra.database.questdb import QuestDBClient, quote_literal

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class PriceStore(ABC):
    """
    Abstract Base Class for historical price sources.
    """

    @abstractmethod
    async def lookup(self, symbol: str, as_of: datetime, limit: int = 1) -> List[PriceQuote]:
        """Up to ``limit`` quotes stamped at or before ``as_of``, newest first."""


class HistoricalPriceStore(PriceStore):
    """
    Serves prices from in-memory DataFrames.

    data_dict: { 'AAPL': pd.DataFrame(index=datetime, columns=['open','high','low','close','volume']) }

    Only the price column (``close`` by default) is read. Naive indexes are
    read as UTC.
    """

    def __init__(self, data_dict: Dict[str, pd.DataFrame], price_column: str = "close"):
        self.price_column = price_column
        self.data: Dict[str, pd.Series] = {}

        for symbol, df in data_dict.items():
            if price_column not in df.columns:
                raise ValueError(f"Price frame for {symbol} has no '{price_column}' column")

            series = df[price_column].astype(float)
            series.index = pd.to_datetime(series.index, utc=True)
            self.data[symbol] = series.sort_index()

    async def lookup(self, symbol: str, as_of: datetime, limit: int = 1) -> List[PriceQuote]:
        series = self.data.get(symbol)
        if series is None:
            return []

        window = series.loc[: pd.Timestamp(ensure_utc(as_of))].tail(limit)
        return [
            PriceQuote(symbol=symbol, timestamp=ts.to_pydatetime(), price=float(price))
            for ts, price in reversed(list(window.items()))
        ]


class QuestDBPriceStore(PriceStore):
    """
    Reads prices from the QuestDB ``ticks`` table.

    Each row holds one tick of OHLCV data; the configured price column (the
    close by default) is used as the price at that tick's timestamp.
    """

    def __init__(self, client: QuestDBClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or default_settings

    def build_query(self, symbol: str, as_of: datetime, limit: int) -> str:
        return (
            f"SELECT timestamp, {self.settings.TICKS_PRICE_COLUMN} AS price "
            f"FROM {self.settings.TICKS_TABLE} "
            f"WHERE symbol = {quote_literal(symbol)} "
            f"AND timestamp <= '{format_questdb(as_of)}' "
            f"ORDER BY timestamp DESC LIMIT {int(limit)}"
        )

    async def lookup(self, symbol: str, as_of: datetime, limit: int = 1) -> List[PriceQuote]:
        as_of = ensure_utc(as_of)
        sql = self.build_query(symbol, as_of, limit)
        rows = await self.client.fetch_rows(sql, symbol=symbol, time=as_of)

        quotes = []
        for row in rows:
            price = row.get("price")
            if price is None:
                # QuestDB renders a NULL double as null
                raise MalformedPriceEntry(symbol, f"null price in row {row}")
            try:
                quotes.append(
                    PriceQuote(symbol=symbol, timestamp=row["timestamp"], price=price)
                )
            except (KeyError, ValueError) as e:
                raise MalformedPriceEntry(symbol, f"unreadable row {row}") from e
        return quotes


class PriceOracle:
    """
    Resolves prices at or before the virtual clock's current instant.

    The future check happens before the store is consulted, whatever the
    store would return. A missing price is always :class:`UnknownPrice`; no
    value is ever interpolated or carried over here.
    """

    def __init__(self, store: PriceStore, clock: VirtualClock):
        self.store = store
        self.clock = clock

        # Telemetry
        self.lookups = 0

    def _guard(self, time: datetime) -> datetime:
        time = ensure_utc(time)
        if time > self.clock.now:
            raise FutureQuery(requested=time, current=self.clock.now)
        return time

    async def price_at(self, symbol: str, time: datetime) -> float:
        time = self._guard(time)

        with tracer.start_as_current_span("price_at") as span:
            span.set_attribute("price.symbol", symbol)
            span.set_attribute("price.as_of", time.isoformat())

            quotes = await self.store.lookup(symbol, time, limit=1)
            self.lookups += 1
            if not quotes:
                raise UnknownPrice(symbol, as_of=time)

            quote = self._validate(symbol, time, quotes[0])
            span.set_attribute("price.value", quote.price)

        logger.debug(f"{symbol} @ {time.isoformat()} = {quote.price}")
        return quote.price

    async def current_price(self, symbol: str) -> float:
        return await self.price_at(symbol, self.clock.now)

    async def recent_prices(self, symbol: str, limit: int) -> List[PriceQuote]:
        """The ``limit`` most recent quotes at or before now, newest first."""
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        now = self.clock.now
        with tracer.start_as_current_span("recent_prices") as span:
            span.set_attribute("price.symbol", symbol)
            span.set_attribute("price.as_of", now.isoformat())
            span.set_attribute("price.limit", limit)

            quotes = await self.store.lookup(symbol, now, limit=limit)
            self.lookups += 1
            recent = [self._validate(symbol, now, q) for q in quotes[:limit]]
            span.set_attribute("price.count", len(recent))

        logger.debug(f"{symbol} last {len(recent)} of {limit} quotes @ {now.isoformat()}")
        return recent

    @staticmethod
    def _validate(symbol: str, as_of: datetime, quote: PriceQuote) -> PriceQuote:
        if quote.timestamp > as_of:
            raise MalformedPriceEntry(
                symbol,
                f"store returned a quote from {quote.timestamp.isoformat()} "
                f"for {as_of.isoformat()}",
            )
        if not quote.is_finite or quote.price < 0:
            raise MalformedPriceEntry(symbol, f"unusable price {quote.price}")
        return quote
