import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from marketsim.backtest.clock import VirtualClock
from marketsim.backtest.engine import EventMergeEngine
from marketsim.backtest.errors import (
    CollaboratorError,
    InvalidTickGranularity,
    MalformedFeedEntry,
    MarketTimeSkip,
)
from marketsim.backtest.events import EventKind, SessionEvent
from marketsim.backtest.feed import HistoricalEventFeed
from marketsim.backtest.session import SessionPhase, SessionStateMachine

T0 = datetime(1970, 1, 1, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)


def make_engine(events=(), phase=SessionPhase.REGULAR, start=T0, feed=None):
    return EventMergeEngine(
        feed or HistoricalEventFeed(events),
        VirtualClock(start),
        SessionStateMachine(phase),
    )


class TestTicks:
    @pytest.mark.asyncio
    async def test_ticks_are_evenly_spaced_without_feed_events(self):
        engine = make_engine(start=T0 + timedelta(seconds=30))

        stamps = []
        for _ in range(5):
            event = await engine.next_event_or_tick(MINUTE)
            assert event.is_tick
            stamps.append(event.timestamp)

        assert stamps == [T0 + MINUTE * i for i in range(1, 6)]
        assert engine.clock.now == stamps[-1]
        assert engine.ticks_delivered == 5

    @pytest.mark.asyncio
    async def test_aligned_start_delivers_the_start_instant_first(self):
        engine = make_engine()

        first = await engine.next_event_or_tick(MINUTE)
        second = await engine.next_event_or_tick(MINUTE)

        assert (first.timestamp, first.kind) == (T0, EventKind.TICK)
        assert (second.timestamp, second.kind) == (T0 + MINUTE, EventKind.TICK)

    @pytest.mark.asyncio
    async def test_tick_duration_may_change_between_calls(self):
        engine = make_engine()
        await engine.next_event_or_tick(MINUTE)

        event = await engine.next_event_or_tick(timedelta(hours=1))

        assert event.timestamp == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [timedelta(0), -MINUTE, 60, 1.5, None])
    async def test_invalid_granularity_fails_before_the_feed_is_read(self, feed_stub, duration):
        engine = make_engine(feed=feed_stub)

        with pytest.raises(InvalidTickGranularity):
            await engine.next_event_or_tick(duration)

        feed_stub.next_boundary_event.assert_not_awaited()
        assert engine.clock.now == T0

    @pytest.mark.asyncio
    async def test_plain_seconds_are_not_a_duration_mid_replay(self):
        engine = make_engine()
        await engine.next_event_or_tick(MINUTE)

        with pytest.raises(InvalidTickGranularity) as exc_info:
            await engine.next_event_or_tick(60)

        assert exc_info.value.duration == 60
        assert engine.clock.now == T0
        assert engine.ticks_delivered == 1


class TestMerge:
    @pytest.mark.asyncio
    async def test_boundary_on_a_tick_wins_the_tie(self):
        engine = make_engine([(T0 + MINUTE, EventKind.REGULAR_MARKET_END)])

        first = await engine.next_event_or_tick(MINUTE)
        assert (first.timestamp, first.kind) == (T0, EventKind.TICK)
        assert engine.session.phase is SessionPhase.REGULAR

        second = await engine.next_event_or_tick(MINUTE)
        assert (second.timestamp, second.kind) == (T0 + MINUTE, EventKind.REGULAR_MARKET_END)
        assert engine.session.phase is SessionPhase.POST_MARKET

        third = await engine.next_event_or_tick(MINUTE)
        assert (third.timestamp, third.kind) == (T0 + 2 * MINUTE, EventKind.TICK)

    @pytest.mark.asyncio
    async def test_boundary_between_ticks_is_delivered_at_its_own_time(self):
        boundary_at = T0 + timedelta(seconds=90)
        engine = make_engine([(boundary_at, EventKind.REGULAR_MARKET_END)])
        await engine.next_event_or_tick(MINUTE)  # 00:00
        await engine.next_event_or_tick(MINUTE)  # 00:01

        event = await engine.next_event_or_tick(MINUTE)

        assert event.timestamp == boundary_at
        assert engine.clock.now == boundary_at

        after = await engine.next_event_or_tick(MINUTE)
        assert after.timestamp == T0 + 2 * MINUTE and after.is_tick

    @pytest.mark.asyncio
    async def test_a_full_session_is_replayed_in_order(self):
        day = [
            (T0 + timedelta(hours=4), EventKind.PRE_MARKET_START),
            (T0 + timedelta(hours=9, minutes=30), EventKind.REGULAR_MARKET_START),
            (T0 + timedelta(hours=16), EventKind.REGULAR_MARKET_END),
            (T0 + timedelta(hours=20), EventKind.POST_MARKET_END),
        ]
        engine = make_engine(day, phase=SessionPhase.CLOSED)

        delivered = []
        for _ in range(30):
            event = await engine.next_event_or_tick(timedelta(hours=1))
            if not event.is_tick:
                delivered.append((event.timestamp, event.kind))

        assert delivered == day
        assert engine.session.phase is SessionPhase.CLOSED
        assert engine.boundaries_delivered == 4

    @pytest.mark.asyncio
    async def test_timestamps_never_go_backwards(self):
        events = [
            (T0 + timedelta(seconds=s), kind)
            for s, kind in [
                (45, EventKind.PRE_MARKET_START),
                (120, EventKind.REGULAR_MARKET_START),
                (121, EventKind.REGULAR_MARKET_END),
                (400, EventKind.POST_MARKET_END),
            ]
        ]
        engine = make_engine(events, phase=SessionPhase.UNKNOWN)

        previous = engine.clock.now
        for _ in range(12):
            event = await engine.next_event_or_tick(MINUTE)
            assert event.timestamp >= previous
            previous = event.timestamp


class TestFailures:
    @pytest.mark.asyncio
    async def test_out_of_sequence_boundary_fails_without_side_effects(self):
        engine = make_engine([(T0 + MINUTE, EventKind.PRE_MARKET_START)])
        await engine.next_event_or_tick(MINUTE)

        with pytest.raises(MarketTimeSkip):
            await engine.next_event_or_tick(MINUTE)

        assert engine.session.phase is SessionPhase.REGULAR
        assert engine.clock.now == T0

        # The same boundary is still pending
        with pytest.raises(MarketTimeSkip):
            await engine.next_event_or_tick(MINUTE)

    @pytest.mark.asyncio
    async def test_feed_errors_propagate_verbatim(self, feed_stub):
        error = CollaboratorError("connection reset", time=T0)
        feed_stub.next_boundary_event.side_effect = error
        engine = make_engine(feed=feed_stub)

        with pytest.raises(CollaboratorError) as exc_info:
            await engine.next_event_or_tick(MINUTE)

        assert exc_info.value is error
        assert engine.clock.now == T0
        assert engine.session.phase is SessionPhase.REGULAR

        # Nothing was delivered, so the start instant is still the next tick
        feed_stub.next_boundary_event.side_effect = None
        event = await engine.next_event_or_tick(MINUTE)
        assert event.timestamp == T0

    @pytest.mark.asyncio
    async def test_feed_event_not_after_now_is_malformed(self, feed_stub):
        feed_stub.next_boundary_event.return_value = SessionEvent(
            timestamp=T0, kind=EventKind.REGULAR_MARKET_END
        )
        engine = make_engine(feed=feed_stub)

        with pytest.raises(MalformedFeedEntry):
            await engine.next_event_or_tick(MINUTE)
        assert engine.session.phase is SessionPhase.REGULAR

    @pytest.mark.asyncio
    async def test_cancelled_advancement_leaves_no_trace(self, feed_stub):
        release = asyncio.Event()

        async def slow_lookup(after):
            await release.wait()
            return SessionEvent(timestamp=after + MINUTE, kind=EventKind.REGULAR_MARKET_END)

        feed_stub.next_boundary_event.side_effect = slow_lookup
        engine = make_engine(feed=feed_stub, start=T0 + timedelta(seconds=30))

        task = asyncio.create_task(engine.next_event_or_tick(MINUTE))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.clock.now == T0 + timedelta(seconds=30)
        assert engine.session.phase is SessionPhase.REGULAR
        assert engine.ticks_delivered == 0


class TestNextEvent:
    @pytest.mark.asyncio
    async def test_fast_forwards_to_the_next_boundary(self):
        opening = T0 + timedelta(hours=9, minutes=30)
        engine = make_engine(
            [(opening, EventKind.REGULAR_MARKET_START)], phase=SessionPhase.UNKNOWN
        )

        event = await engine.next_event()

        assert (event.timestamp, event.kind) == (opening, EventKind.REGULAR_MARKET_START)
        assert engine.clock.now == opening
        assert engine.session.phase is SessionPhase.REGULAR

        # Ticking resumes on the grid strictly after the boundary
        tick = await engine.next_event_or_tick(MINUTE)
        assert tick.timestamp == opening + MINUTE

    @pytest.mark.asyncio
    async def test_exhausted_feed_returns_none(self):
        engine = make_engine()

        assert await engine.next_event() is None
        assert engine.clock.now == T0
        assert engine.session.phase is SessionPhase.REGULAR

    @pytest.mark.asyncio
    async def test_skip_is_reported(self):
        engine = make_engine(
            [(T0 + MINUTE, EventKind.POST_MARKET_END)], phase=SessionPhase.PRE_MARKET
        )

        with pytest.raises(MarketTimeSkip) as exc_info:
            await engine.next_event()

        assert exc_info.value.phase is SessionPhase.PRE_MARKET
        assert engine.clock.now == T0
