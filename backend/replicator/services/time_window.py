"""Is the wall clock inside the configured sync window?"""

from __future__ import annotations

from datetime import datetime

from replicator.schemas.sync import TimeWindow, parse_hhmm


def is_within_window(now: datetime, start: str, end: str) -> bool:
    """Inclusive on both ends, minute resolution, no overnight wraparound."""
    now_minutes = now.hour * 60 + now.minute
    return parse_hhmm(start) <= now_minutes <= parse_hhmm(end)


def window_open(now: datetime, window: TimeWindow) -> bool:
    return is_within_window(now, window.start, window.end)
