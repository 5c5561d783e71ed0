from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketsim.core.timeutils import ensure_utc


class EventKind(str, Enum):
    TICK = "TICK"
    PRE_MARKET_START = "PRE_MARKET_START"
    REGULAR_MARKET_START = "REGULAR_MARKET_START"
    REGULAR_MARKET_END = "REGULAR_MARKET_END"
    POST_MARKET_END = "POST_MARKET_END"

    @property
    def is_boundary(self) -> bool:
        return self is not EventKind.TICK


class SessionEvent(BaseModel):
    """
    A single entry of the replayed timeline.

    Ticks are synthesized by the merge engine; every other kind is a trading
    session boundary read from the event feed.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="UTC instant of the event")
    kind: EventKind = Field(..., description="Tick or session boundary")

    @field_validator("timestamp", mode="before")
    @classmethod
    def to_utc(cls, v):
        return ensure_utc(v)

    @property
    def is_tick(self) -> bool:
        return self.kind is EventKind.TICK

    @classmethod
    def tick(cls, timestamp: datetime) -> "SessionEvent":
        return cls(timestamp=timestamp, kind=EventKind.TICK)

    def __str__(self) -> str:
        return f"{self.kind.value}@{self.timestamp.isoformat()}"
