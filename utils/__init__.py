"""Utility modules for the receipt search cache.

This package contains helper functions that are not directly related to
caching but support size accounting and time arithmetic.
"""

from .size_utils import payload_size_bytes, format_size, BYTES_PER_MB
from .time_utils import age_seconds, local_hour, is_within_hours, parse_timestamp

__all__ = [
    "payload_size_bytes",
    "format_size",
    "BYTES_PER_MB",
    "age_seconds",
    "local_hour",
    "is_within_hours",
    "parse_timestamp",
]
