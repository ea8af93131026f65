"""Payload size helpers for cache memory accounting."""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def payload_size_bytes(data: Any) -> int:
    """Return the size of ``data`` serialized as UTF-8 JSON.

    Args:
        data: JSON-serializable payload

    Returns:
        Size in bytes, or 0 if the payload cannot be serialized
    """
    try:
        return len(json.dumps(data, ensure_ascii=False, default=str).encode("utf-8"))
    except (TypeError, ValueError) as e:
        logger.warning("Could not measure payload size: %s", e)
        return 0


def format_size(size_bytes: float) -> str:
    """Format bytes to human readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human readable string (e.g., "1.5MB", "256.0KB")
    """
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f}{unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f}TB"
