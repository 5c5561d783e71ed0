import math
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketsim.core.timeutils import ensure_utc


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class PriceQuote(BaseModel):
    """
    Price Store Output.

    Prices are not range-checked here; the price oracle decides what a
    usable price is so that bad rows surface as typed market-data errors.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Ticker Symbol")
    timestamp: datetime = Field(..., description="Instant the price was observed")
    price: float = Field(..., description="Last traded (close) price")

    @field_validator("timestamp", mode="before")
    @classmethod
    def to_utc(cls, v):
        return ensure_utc(v)

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.price)


class TradeFill(BaseModel):
    """
    Execution Output.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Virtual time of the fill")
    symbol: str = Field(..., description="Ticker Symbol")
    side: Side = Field(..., description="BUY or SELL")
    quantity: int = Field(..., gt=0, description="Shares exchanged")
    price: float = Field(..., ge=0.0, description="Price per share")
    total: float = Field(..., ge=0.0, description="price * quantity")
    cash_after: float = Field(..., ge=0.0, description="Cash balance after the fill")
