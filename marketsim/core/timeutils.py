from datetime import datetime, timezone

import pandas as pd

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value) -> datetime:
    """Coerce a datetime-like value to a timezone-aware UTC ``datetime``.

    Naive values are read as UTC, which is how QuestDB reports timestamps.
    Strings and pandas timestamps are accepted as well.
    """
    if isinstance(value, datetime) and not isinstance(value, pd.Timestamp):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return ts.to_pydatetime()


def format_questdb(value: datetime) -> str:
    """Format a UTC instant the way QuestDB expects it in a WHERE clause."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
