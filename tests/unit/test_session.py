from datetime import datetime, timezone

import pytest

from marketsim.backtest.errors import MarketTimeSkip, ProtocolError
from marketsim.backtest.events import EventKind, SessionEvent
from marketsim.backtest.session import SessionPhase, SessionStateMachine, next_phase

T0 = datetime(2024, 6, 25, 8, 0, tzinfo=timezone.utc)


def boundary(kind: EventKind) -> SessionEvent:
    return SessionEvent(timestamp=T0, kind=kind)


LEGAL = [
    (SessionPhase.CLOSED, EventKind.PRE_MARKET_START, SessionPhase.PRE_MARKET),
    (SessionPhase.PRE_MARKET, EventKind.REGULAR_MARKET_START, SessionPhase.REGULAR),
    (SessionPhase.REGULAR, EventKind.REGULAR_MARKET_END, SessionPhase.POST_MARKET),
    (SessionPhase.POST_MARKET, EventKind.POST_MARKET_END, SessionPhase.CLOSED),
]


@pytest.mark.parametrize("phase,kind,expected", LEGAL)
def test_legal_transitions(phase, kind, expected):
    machine = SessionStateMachine(phase)
    assert machine.update(boundary(kind)) is expected
    assert machine.phase is expected


@pytest.mark.parametrize(
    "kind,expected",
    [
        (EventKind.PRE_MARKET_START, SessionPhase.PRE_MARKET),
        (EventKind.REGULAR_MARKET_START, SessionPhase.REGULAR),
        (EventKind.REGULAR_MARKET_END, SessionPhase.POST_MARKET),
        (EventKind.POST_MARKET_END, SessionPhase.CLOSED),
    ],
)
def test_unknown_phase_accepts_any_boundary(kind, expected):
    machine = SessionStateMachine()
    assert machine.phase is SessionPhase.UNKNOWN

    machine.update(boundary(kind))

    assert machine.phase is expected


@pytest.mark.parametrize("phase", list(SessionPhase))
def test_ticks_are_ignored(phase):
    machine = SessionStateMachine(phase)
    machine.update(SessionEvent.tick(T0))
    assert machine.phase is phase


def test_out_of_sequence_event_is_rejected_and_leaves_phase():
    machine = SessionStateMachine(SessionPhase.REGULAR)

    with pytest.raises(MarketTimeSkip) as exc_info:
        machine.update(boundary(EventKind.PRE_MARKET_START))

    assert isinstance(exc_info.value, ProtocolError)
    assert exc_info.value.phase is SessionPhase.REGULAR
    assert exc_info.value.event.kind is EventKind.PRE_MARKET_START
    assert machine.phase is SessionPhase.REGULAR


def test_every_illegal_pair_is_rejected():
    legal = {(phase, kind) for phase, kind, _ in LEGAL}
    known = [p for p in SessionPhase if p is not SessionPhase.UNKNOWN]
    boundaries = [k for k in EventKind if k.is_boundary]

    for phase in known:
        for kind in boundaries:
            if (phase, kind) in legal:
                continue
            with pytest.raises(MarketTimeSkip):
                next_phase(phase, boundary(kind))


def test_check_does_not_apply():
    machine = SessionStateMachine(SessionPhase.CLOSED)
    assert machine.check(boundary(EventKind.PRE_MARKET_START)) is SessionPhase.PRE_MARKET
    assert machine.phase is SessionPhase.CLOSED


def test_full_day_cycle_returns_to_closed():
    machine = SessionStateMachine(SessionPhase.CLOSED)
    opened = []
    for _, kind, _ in LEGAL:
        machine.update(boundary(kind))
        opened.append(machine.is_open())

    assert opened == [True, True, True, False]
    assert machine.phase is SessionPhase.CLOSED


def test_is_open():
    assert not SessionPhase.UNKNOWN.is_open
    assert not SessionPhase.CLOSED.is_open
    assert SessionPhase.PRE_MARKET.is_open
    assert SessionPhase.REGULAR.is_open
    assert SessionPhase.POST_MARKET.is_open
    assert SessionPhase.POST_MARKET.is_extended
    assert not SessionPhase.REGULAR.is_extended
