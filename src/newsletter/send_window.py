"""Decide whether a subscriber's preferred local send time is 'now'."""

from __future__ import annotations

import datetime
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from newsletter.models import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
DEFAULT_TOLERANCE = 15
MIN_TOLERANCE = 1
MAX_TOLERANCE = 60


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the IANA zone for ``name``, falling back to UTC."""
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_time(now: datetime.datetime, timezone_name: str | None) -> datetime.time:
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    return now.astimezone(resolve_timezone(timezone_name)).time()


def minutes_apart(a_hour: int, a_minute: int, b_hour: int, b_minute: int) -> int:
    """Distance between two wall-clock times around the 24h circle.

    >>> minutes_apart(0, 5, 23, 58)
    7
    """
    diff = abs((a_hour * 60 + a_minute) - (b_hour * 60 + b_minute))
    return min(diff, MINUTES_PER_DAY - diff)


def is_due(
    pref_hour: int,
    pref_minute: int,
    pref_timezone: str | None,
    now: datetime.datetime,
    tolerance_minutes: int = DEFAULT_TOLERANCE,
) -> bool:
    current = local_time(now, pref_timezone)
    distance = minutes_apart(pref_hour, pref_minute, current.hour, current.minute)
    return distance <= tolerance_minutes


def slot_date(
    pref_hour: int,
    pref_minute: int,
    pref_timezone: str | None,
    now: datetime.datetime,
) -> datetime.date:
    """Local date of the preferred send slot closest to ``now``.

    A window around 00:05 spans two calendar days; runs at 23:55 and 00:10
    both belong to the slot on the later date.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    local = now.astimezone(resolve_timezone(pref_timezone)).replace(tzinfo=None)
    slot = datetime.time(pref_hour, pref_minute)
    candidates = [
        datetime.datetime.combine(local.date() + datetime.timedelta(days=offset), slot)
        for offset in (-1, 0, 1)
    ]
    return min(candidates, key=lambda c: abs(c - local)).date()


def clamp_tolerance(raw: str | int | None) -> int:
    """Parse a ``window`` parameter into the 1-60 minute range."""
    if raw is None or raw == "":
        return DEFAULT_TOLERANCE
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_TOLERANCE
    return min(max(value, MIN_TOLERANCE), MAX_TOLERANCE)
