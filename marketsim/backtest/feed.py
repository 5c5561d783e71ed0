"""Session event feeds.

A feed answers one question: which trading-session boundary comes first
strictly after a given instant? Feeds hold no cursor of their own, so asking
twice is harmless and the merge engine decides when an event is consumed.
"""

import bisect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

from opentelemetry import trace

from marketsim.backtest.errors import MalformedFeedEntry
from marketsim.backtest.events import EventKind, SessionEvent
from marketsim.core.config import Settings, settings as default_settings
from marketsim.core.timeutils import ensure_utc, format_questdb
from marketsim.infra.database.questdb import QuestDBClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# QuestDB `system_events.event` vocabulary
SYSTEM_EVENT_KINDS: Dict[str, EventKind] = {
    "system_hours_start": EventKind.PRE_MARKET_START,
    "regular_hours_start": EventKind.REGULAR_MARKET_START,
    "regular_hours_end": EventKind.REGULAR_MARKET_END,
    "system_hours_end": EventKind.POST_MARKET_END,
}


class EventFeed(ABC):
    """
    Abstract Base Class for Session Event Feeds (Historical or Database).
    """

    @abstractmethod
    async def next_boundary_event(self, after: datetime) -> Optional[SessionEvent]:
        """First session boundary strictly after ``after``, or None when exhausted."""


class HistoricalEventFeed(EventFeed):
    """
    Serves session boundaries from an in-memory list.

    events: [(datetime, EventKind), ...] or SessionEvent instances, any order.
    """

    def __init__(self, events: Iterable[Union[SessionEvent, Tuple[datetime, EventKind]]] = ()):
        parsed: List[SessionEvent] = []
        for item in events:
            event = item if isinstance(item, SessionEvent) else SessionEvent(
                timestamp=item[0], kind=item[1]
            )
            if event.is_tick:
                raise MalformedFeedEntry(event.kind, "session boundary")
            parsed.append(event)

        self._events = sorted(parsed, key=lambda e: e.timestamp)
        self._timestamps = [e.timestamp for e in self._events]

    async def next_boundary_event(self, after: datetime) -> Optional[SessionEvent]:
        index = bisect.bisect_right(self._timestamps, ensure_utc(after))
        if index >= len(self._events):
            return None
        return self._events[index]


class QuestDBEventFeed(EventFeed):
    """
    Reads session boundaries from the QuestDB ``system_events`` table.

    Rows are ``(event SYMBOL, timestamp TIMESTAMP)``; the event names are the
    ones listed in :data:`SYSTEM_EVENT_KINDS`.
    """

    def __init__(self, client: QuestDBClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or default_settings

    def build_query(self, after: datetime) -> str:
        return (
            f"SELECT event, timestamp FROM {self.settings.SYSTEM_EVENTS_TABLE} "
            f"WHERE timestamp > '{format_questdb(after)}' "
            f"ORDER BY timestamp ASC LIMIT 1"
        )

    async def next_boundary_event(self, after: datetime) -> Optional[SessionEvent]:
        after = ensure_utc(after)
        with tracer.start_as_current_span("feed_next_boundary_event") as span:
            span.set_attribute("feed.after", after.isoformat())
            rows = await self.client.fetch_rows(self.build_query(after), time=after)
        if not rows:
            logger.debug(f"No session events after {after.isoformat()}")
            return None

        return self.parse_row(rows[0])

    @staticmethod
    def parse_row(row: dict) -> SessionEvent:
        name = row.get("event")
        kind = SYSTEM_EVENT_KINDS.get(name)
        if kind is None:
            raise MalformedFeedEntry(name, "system event")

        raw_ts = row.get("timestamp")
        if raw_ts is None:
            raise MalformedFeedEntry(row, "timestamped system event")
        try:
            timestamp = ensure_utc(raw_ts)
        except (TypeError, ValueError) as e:
            raise MalformedFeedEntry(raw_ts, "timestamp") from e

        return SessionEvent(timestamp=timestamp, kind=kind)
