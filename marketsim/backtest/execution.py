"""
Market order execution against the simulated ledger.

Orders fill in full at the current price or not at all. There are no fees,
no slippage and no order book: the price oracle's price at the virtual
clock's instant is the fill price.

Every order is checked (session open, quantity, price known, cash or shares
available) before the ledger is touched, so a rejected order leaves cash and
holdings exactly as they were.
"""

import logging
import numbers

from opentelemetry import trace

from marketsim.backtest.clock import VirtualClock
from marketsim.backtest.errors import (
    InsufficientCash,
    InsufficientShares,
    InvalidQuantity,
    UntimelyTrade,
)
from marketsim.backtest.portfolio import Ledger
from marketsim.backtest.prices import PriceOracle
from marketsim.backtest.session import SessionStateMachine
from marketsim.core.models import Side, TradeFill

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class SimulatedExecutionHandler:
    """
    Executes market orders for one simulation.

    Args:
        ledger: Cash and holdings to trade against
        oracle: No-lookahead price source used for fill prices
        session: Session state; orders are only accepted while it is open
        clock: Virtual clock stamping the fills
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        session: SessionStateMachine,
        clock: VirtualClock,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.session = session
        self.clock = clock

        # Track execution metrics
        self.total_fills = 0
        self.total_rejections = 0

    async def buy_at_market(self, symbol: str, quantity: int) -> TradeFill:
        """
        Buy ``quantity`` shares of ``symbol`` at the current price.

        Raises:
            UntimelyTrade: the session is not open.
            InvalidQuantity: ``quantity`` is not a positive whole number.
            UnknownPrice: no price is known for ``symbol`` at this instant.
            InsufficientCash: the shares cost more than the available cash.
        """
        with tracer.start_as_current_span("buy_at_market") as span:
            span.set_attribute("order.symbol", symbol)
            span.set_attribute("order.direction", Side.BUY.value)

            quantity = self._validate(symbol, quantity)
            span.set_attribute("order.quantity", quantity)

            price = await self.oracle.current_price(symbol)
            total = price * quantity

            if not self.ledger.can_afford(total):
                self.total_rejections += 1
                logger.warning(
                    f"Rejected BUY {quantity} {symbol} @ {price}: "
                    f"costs {total:.2f} with {self.ledger.cash:.2f} in cash"
                )
                raise InsufficientCash(
                    quantity=quantity, symbol=symbol, total=total, cash=self.ledger.cash
                )

            self.ledger.debit(total, symbol, quantity)
            return self._record(span, Side.BUY, symbol, quantity, price, total)

    async def sell_at_market(self, symbol: str, quantity: int) -> TradeFill:
        """
        Sell ``quantity`` owned shares of ``symbol`` at the current price.

        Raises:
            UntimelyTrade: the session is not open.
            InvalidQuantity: ``quantity`` is not a positive whole number.
            InsufficientShares: fewer than ``quantity`` shares are owned.
            UnknownPrice: no price is known for ``symbol`` at this instant.
        """
        with tracer.start_as_current_span("sell_at_market") as span:
            span.set_attribute("order.symbol", symbol)
            span.set_attribute("order.direction", Side.SELL.value)

            quantity = self._validate(symbol, quantity)
            span.set_attribute("order.quantity", quantity)

            owned = self.ledger.shares_of(symbol)
            if quantity > owned:
                self.total_rejections += 1
                logger.warning(
                    f"Rejected SELL {quantity} {symbol}: only {owned} shares owned"
                )
                raise InsufficientShares(quantity=quantity, symbol=symbol, owned=owned)

            price = await self.oracle.current_price(symbol)
            total = price * quantity

            self.ledger.credit(total, symbol, quantity)
            return self._record(span, Side.SELL, symbol, quantity, price, total)

    async def net_worth(self) -> float:
        """Cash plus every holding valued at its current price."""
        total = self.ledger.cash
        # Copy first: each symbol is priced exactly once
        for symbol, quantity in list(self.ledger.holdings.items()):
            total += await self.oracle.current_price(symbol) * quantity
        return total

    def _validate(self, symbol: str, quantity) -> int:
        if not self.session.is_open():
            self.total_rejections += 1
            logger.warning(
                f"Rejected order for {symbol}: session is {self.session.phase.value} "
                f"at {self.clock.now.isoformat()}"
            )
            raise UntimelyTrade(symbol, self.clock.now)

        if (
            isinstance(quantity, bool)
            or not isinstance(quantity, numbers.Integral)
            or quantity < 1
        ):
            self.total_rejections += 1
            raise InvalidQuantity(symbol, quantity)

        return int(quantity)

    def _record(self, span, side: Side, symbol: str, quantity: int, price: float, total: float) -> TradeFill:
        fill = TradeFill(
            timestamp=self.clock.now,
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            total=total,
            cash_after=self.ledger.cash,
        )
        self.total_fills += 1

        span.set_attribute("execution.fill_price", price)
        span.set_attribute("execution.total", total)
        span.set_attribute("execution.cash_after", self.ledger.cash)

        logger.info(
            f"📈 {side.value} {quantity} {symbol} FILLED @ ${price:.2f} "
            f"(total: ${total:.2f}, cash: ${self.ledger.cash:.2f})"
        )
        return fill

    def get_execution_summary(self) -> dict:
        return {
            "total_fills": self.total_fills,
            "total_rejections": self.total_rejections,
        }
