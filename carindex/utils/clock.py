"""Timestamps for persisted records."""

import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def monotonic_start() -> float:
    return time.perf_counter()


def elapsed(start: float) -> float:
    """Seconds since start, rounded to the millisecond."""
    return round(time.perf_counter() - start, 3)
