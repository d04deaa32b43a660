"""
Reference timezone and date helpers shared by the decoder, caches, and planner.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

# All dates leaving the decoder and the planner are in this zone.
# A missing tz database fails here, at import, which aborts start-up.
NEW_YORK = ZoneInfo("America/New_York")

Clock = Callable[[], datetime]


def now() -> datetime:
    """Current time in the reference zone. Injected as a Clock so tests can fix it."""
    return datetime.now(NEW_YORK)


def midnight(t: datetime) -> datetime:
    """Strip hours, minutes, seconds and microseconds, keeping the zone."""
    return datetime(t.year, t.month, t.day, tzinfo=t.tzinfo)


def time_key(t: datetime) -> datetime:
    """Normalize a time into a hashable key that compares by instant."""
    return t.astimezone(timezone.utc)


def to_reference_zone(t: datetime) -> datetime:
    """Convert aware times to the reference zone; naive times are assumed to be in it."""
    if t.tzinfo is None:
        return t.replace(tzinfo=NEW_YORK)
    return t.astimezone(NEW_YORK)


def is_business_day(t: datetime) -> bool:
    """Monday through Friday. Exchange holidays are not consulted."""
    return t.weekday() < 5


def business_days_between(latest: datetime, today: datetime) -> int:
    """
    Count business days after `latest` up to and including `today`.

    Both arguments are reduced to midnight in the reference zone first, so
    only calendar dates matter. Returns 0 when `latest` is today or later.
    """
    day = midnight(to_reference_zone(latest))
    end = midnight(to_reference_zone(today))

    count = 0
    while True:
        day = day + timedelta(days=1)
        if day > end:
            break
        if is_business_day(day):
            count += 1
    return count
