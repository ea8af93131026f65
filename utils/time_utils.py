"""Time helpers shared by cache sweeps and conversation history."""

import math
from datetime import datetime
from typing import Optional


def age_seconds(timestamp: float, now: float) -> float:
    """Age of an epoch-seconds timestamp relative to ``now``."""
    return now - timestamp


def local_hour(timestamp: float) -> int:
    """Local wall-clock hour (0-23) for an epoch-seconds timestamp."""
    return datetime.fromtimestamp(timestamp).hour


def is_within_hours(timestamp: float, start_hour: int, end_hour: int) -> bool:
    """Check whether the local hour of ``timestamp`` is in [start_hour, end_hour).

    Windows that wrap midnight (start_hour > end_hour) are supported.
    """
    hour = local_hour(timestamp)
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def parse_timestamp(value: object) -> Optional[float]:
    """Coerce a stored timestamp (number or numeric string) to float seconds.

    Returns None for anything else, including NaN and infinities.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value)
        except ValueError:
            return None
    else:
        return None
    return result if math.isfinite(result) else None
