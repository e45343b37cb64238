"""UTC conversion, end-time computation and window classification.

Every instant stored or compared by the engine is a tz-aware UTC datetime.
Naive input is read as wall-clock time in the lounge's display timezone.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .config import get_settings
from .domain import WindowPhase
from .errors import InvalidDuration


def _zone(tz_name: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz_name or get_settings().display_timezone)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_canonical(instant: datetime, tz_name: Optional[str] = None) -> datetime:
    """Normalize ``instant`` to UTC. Idempotent on already-canonical values."""
    if instant.tzinfo is None or instant.tzinfo.utcoffset(instant) is None:
        instant = instant.replace(tzinfo=_zone(tz_name))
    return instant.astimezone(timezone.utc)


def from_canonical(instant: datetime, tz_name: Optional[str] = None) -> datetime:
    """Inverse of :func:`to_canonical` for display.

    Naive input is read in the same zone it is converted to.
    """
    return to_canonical(instant, tz_name).astimezone(_zone(tz_name))


def is_valid_duration(duration_minutes: object) -> bool:
    return isinstance(duration_minutes, int) and not isinstance(duration_minutes, bool) and duration_minutes > 0


def compute_end(start: datetime, duration_minutes: int) -> datetime:
    if not is_valid_duration(duration_minutes):
        raise InvalidDuration(duration_minutes)
    return to_canonical(start) + timedelta(minutes=duration_minutes)


def classify(start: datetime, end: datetime, now: datetime) -> WindowPhase:
    # start-inclusive, end-exclusive
    if now >= end:
        return WindowPhase.COMPLETED
    if now >= start:
        return WindowPhase.ONGOING
    return WindowPhase.UPCOMING


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap; touching windows do not overlap."""
    return start < other_end and end > other_start


def minutes_between(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() // 60))
