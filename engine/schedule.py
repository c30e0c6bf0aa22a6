from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from zoneinfo import ZoneInfo

DEFAULT_DELAY_HOURS = {"promotion": 24, "demotion": 2}
FALLBACK_DELAY_HOURS = 24

SATURDAY = 5
SUNDAY = 6


def resolve_timezone(tz_name: str) -> tzinfo:
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return timezone.utc


def compute_scheduled_time(
    change_type: str,
    now: datetime,
    *,
    tz: tzinfo,
    start_hour: int = 9,
    delay_hours: Optional[dict[str, int]] = None,
) -> datetime:
    """
    Execution instant for a planned change:

    1. now + delay (promotion 24h, demotion 2h, anything else 24h);
    2. a Saturday or Sunday result is pushed to the following Monday;
    3. the result is floored to `start_hour`:00:00.000 local time on that date,
       even when it already falls on a weekday.
    """

    delays = delay_hours or DEFAULT_DELAY_HOURS
    hours = delays.get(str(change_type or ""), FALLBACK_DELAY_HOURS)

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = (now.astimezone(timezone.utc) + timedelta(hours=hours)).astimezone(tz)

    wd = local.weekday()
    if wd == SUNDAY:
        local = local + timedelta(days=1)
    elif wd == SATURDAY:
        local = local + timedelta(days=2)

    return datetime(local.year, local.month, local.day, start_hour, 0, 0, 0, tzinfo=tz)
