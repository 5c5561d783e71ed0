"""Virtual clock of the simulation.

Virtual time is the simulation's own "now". It is advanced explicitly by the
event-merge engine and never follows wall-clock time.
"""

from datetime import datetime, timedelta

from marketsim.backtest.errors import InvalidTickGranularity
from marketsim.core.timeutils import EPOCH, ensure_utc

_ONE_MICROSECOND = timedelta(microseconds=1)


def truncate(time: datetime, duration: timedelta) -> datetime:
    """Round ``time`` down to a multiple of ``duration`` counted from the epoch.

    Raises:
        InvalidTickGranularity: ``duration`` is not positive, or the
            truncated instant falls outside the representable range.
    """
    if not isinstance(duration, timedelta) or duration <= timedelta(0):
        raise InvalidTickGranularity(duration, time)

    step = duration // _ONE_MICROSECOND
    elapsed = (time - EPOCH) // _ONE_MICROSECOND
    try:
        # Floor division keeps pre-epoch instants rounding downwards too
        return EPOCH + timedelta(microseconds=elapsed - elapsed % step)
    except OverflowError as e:
        raise InvalidTickGranularity(duration, time) from e


def is_aligned(time: datetime, duration: timedelta) -> bool:
    return truncate(time, duration) == time


def next_boundary(time: datetime, duration: timedelta) -> datetime:
    """First multiple of ``duration`` strictly after ``time``."""
    try:
        return truncate(time, duration) + duration
    except OverflowError as e:
        raise InvalidTickGranularity(duration, time) from e


class VirtualClock:
    """Monotonically non-decreasing simulated UTC instant."""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)

    @property
    def now(self) -> datetime:
        return self._now

    def advance_to(self, time: datetime) -> None:
        if time < self._now:
            raise ValueError(
                f"Virtual clock cannot move back from {self._now.isoformat()} "
                f"to {time.isoformat()}"
            )
        self._now = time

    def __repr__(self) -> str:
        return f"VirtualClock({self._now.isoformat()})"
