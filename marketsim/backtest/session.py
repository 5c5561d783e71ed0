"""Trading-session state machine.

A trading day cycles through CLOSED -> PRE_MARKET -> REGULAR -> POST_MARKET
-> CLOSED. Boundary events move the machine one step along the cycle; any
other boundary is a desynchronization between the clock and the feed.
"""

import logging
from enum import Enum
from typing import Dict, Tuple

from marketsim.backtest.errors import MarketTimeSkip
from marketsim.backtest.events import EventKind, SessionEvent

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    UNKNOWN = "UNKNOWN"  # Before the first boundary event of a run
    CLOSED = "CLOSED"
    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    POST_MARKET = "POST_MARKET"

    @property
    def is_open(self) -> bool:
        return self in _OPEN_PHASES

    @property
    def is_regular(self) -> bool:
        return self is SessionPhase.REGULAR

    @property
    def is_extended(self) -> bool:
        return self in (SessionPhase.PRE_MARKET, SessionPhase.POST_MARKET)


_OPEN_PHASES = frozenset(
    {SessionPhase.PRE_MARKET, SessionPhase.REGULAR, SessionPhase.POST_MARKET}
)

TRANSITIONS: Dict[Tuple[SessionPhase, EventKind], SessionPhase] = {
    (SessionPhase.CLOSED, EventKind.PRE_MARKET_START): SessionPhase.PRE_MARKET,
    (SessionPhase.PRE_MARKET, EventKind.REGULAR_MARKET_START): SessionPhase.REGULAR,
    (SessionPhase.REGULAR, EventKind.REGULAR_MARKET_END): SessionPhase.POST_MARKET,
    (SessionPhase.POST_MARKET, EventKind.POST_MARKET_END): SessionPhase.CLOSED,
}

# Phase each boundary leads into, used to synchronize from UNKNOWN
ENTERED_PHASE: Dict[EventKind, SessionPhase] = {
    kind: phase for (_, kind), phase in TRANSITIONS.items()
}


def next_phase(phase: SessionPhase, event: SessionEvent) -> SessionPhase:
    """Phase reached after ``event`` in ``phase``, without applying it.

    Raises:
        MarketTimeSkip: ``event`` is not the single legal boundary of ``phase``.
    """
    if event.is_tick:
        return phase

    if phase is SessionPhase.UNKNOWN:
        return ENTERED_PHASE[event.kind]

    try:
        return TRANSITIONS[(phase, event.kind)]
    except KeyError:
        raise MarketTimeSkip(event, phase) from None


class SessionStateMachine:
    def __init__(self, phase: SessionPhase = SessionPhase.UNKNOWN):
        self._phase = phase

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    def is_open(self) -> bool:
        return self._phase.is_open

    def check(self, event: SessionEvent) -> SessionPhase:
        return next_phase(self._phase, event)

    def update(self, event: SessionEvent) -> SessionPhase:
        """Apply ``event``; the phase is left untouched when it raises."""
        new_phase = next_phase(self._phase, event)

        if new_phase is not self._phase:
            logger.info(
                f"Session {self._phase.value} -> {new_phase.value} at "
                f"{event.timestamp.isoformat()}"
            )
            self._phase = new_phase

        return new_phase

    def __repr__(self) -> str:
        return f"SessionStateMachine({self._phase.value})"
