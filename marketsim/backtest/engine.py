"""Event-merge engine: the single authoritative timeline of a simulation.

Each advancement merges two sources, the next session boundary from the
event feed and a synthetic tick on a fixed grid, and delivers whichever comes
first. A boundary that lands exactly on a tick wins the tie so that session
changes are never delayed behind a tick.

Every advancement is all-or-nothing. The feed is only peeked (feeds keep no
cursor) and all state is mutated synchronously after the last ``await``, so
an error or a cancellation leaves the clock, phase and delivery state as
they were.
"""

import logging
from datetime import timedelta
from typing import Optional

from opentelemetry import trace

from marketsim.backtest.clock import VirtualClock, is_aligned, next_boundary
from marketsim.backtest.errors import MalformedFeedEntry
from marketsim.backtest.events import SessionEvent
from marketsim.backtest.feed import EventFeed
from marketsim.backtest.session import SessionStateMachine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class EventMergeEngine:
    """
    Advances virtual time by merging feed boundaries with fixed-interval ticks.

    Clock Management:
    - The clock only moves when an event is delivered.
    - A run starting on a tick boundary delivers that boundary as its first
      tick; afterwards ticks fall on the next grid point strictly after now.
    - Delivered timestamps are strictly increasing, apart from that first tick
      sharing the start instant.

    Example:
        engine = EventMergeEngine(feed, VirtualClock(start), SessionStateMachine())
        await engine.next_event()  # fast-forward to the next boundary
        while True:
            event = await engine.next_event_or_tick(timedelta(minutes=1))
    """

    def __init__(self, feed: EventFeed, clock: VirtualClock, session: SessionStateMachine):
        self.feed = feed
        self.clock = clock
        self.session = session

        # Whether something has already been delivered at clock.now
        self._delivered_at_now = False

        # Telemetry
        self.ticks_delivered = 0
        self.boundaries_delivered = 0

    def candidate_tick(self, tick_duration: timedelta):
        """Instant of the tick that would be delivered if no boundary came first."""
        now = self.clock.now
        if not self._delivered_at_now and is_aligned(now, tick_duration):
            return now
        return next_boundary(now, tick_duration)

    async def next_event(self) -> Optional[SessionEvent]:
        """Deliver the next session boundary, skipping over any ticks.

        Returns None once the feed is exhausted, leaving the clock where it is.
        """
        with tracer.start_as_current_span("next_event") as span:
            span.set_attribute("market.time", self.clock.now.isoformat())

            event = await self._peek_boundary()
            if event is None:
                logger.debug(f"Event feed exhausted at {self.clock.now.isoformat()}")
                return None

            self._commit(event)
            span.set_attribute("market.phase", self.session.phase.value)
            return event

    async def next_event_or_tick(self, tick_duration: timedelta) -> SessionEvent:
        """Deliver the earlier of the next boundary and the next tick.

        Raises:
            InvalidTickGranularity: ``tick_duration`` cannot truncate the clock.
            MarketTimeSkip: the boundary does not follow the current phase.
            MalformedFeedEntry: the feed broke its ordering contract.
        """
        with tracer.start_as_current_span("next_event_or_tick") as span:
            span.set_attribute("market.time", self.clock.now.isoformat())

            # Validated before touching the feed
            candidate = self.candidate_tick(tick_duration)
            span.set_attribute("market.tick_seconds", tick_duration.total_seconds())

            upcoming = await self._peek_boundary()
            if upcoming is not None and upcoming.timestamp <= candidate:
                event = upcoming
            else:
                event = SessionEvent.tick(candidate)

            self._commit(event)
            span.set_attribute("market.event", event.kind.value)
            span.set_attribute("market.phase", self.session.phase.value)
            return event

    async def _peek_boundary(self) -> Optional[SessionEvent]:
        now = self.clock.now
        event = await self.feed.next_boundary_event(now)
        if event is None:
            return None

        if event.is_tick:
            raise MalformedFeedEntry(event.kind, "session boundary")
        if event.timestamp <= now:
            raise MalformedFeedEntry(
                str(event), f"session boundary strictly after {now.isoformat()}"
            )
        return event

    def _commit(self, event: SessionEvent) -> None:
        # Validate against the phase first; nothing has moved if this raises
        self.session.check(event)

        self.clock.advance_to(event.timestamp)
        self.session.update(event)
        self._delivered_at_now = True

        if event.is_tick:
            self.ticks_delivered += 1
        else:
            self.boundaries_delivered += 1
        logger.debug(f"Delivered {event} (phase={self.session.phase.value})")
