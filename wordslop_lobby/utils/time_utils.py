import time
from datetime import datetime

import pytz


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_datetime(value: int, tz_name: str = "UTC") -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=pytz.timezone(tz_name))


def seconds_since(timestamp_ms: int, now: int) -> float:
    return (now - timestamp_ms) / 1000
