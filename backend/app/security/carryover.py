# backend/app/security/carryover.py
"""
Calendar arithmetic for the weekend trust carryover.

A verification made between Friday 00:00 and the following Monday at the
cutoff hour stays valid until that Monday cutoff. All functions here are
pure and take the timezone explicitly; "Friday" and "Monday" are always
evaluated in that timezone, never in the server's local time.
"""
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Tuple

from backend.app.core.clock import ensure_aware


FRIDAY = 4
MONDAY = 0


def last_friday_at_or_before(day: date) -> date:
    """The Friday on or before ``day`` (``day`` itself if it is a Friday)."""
    return day - timedelta(days=(day.weekday() - FRIDAY) % 7)


def monday_after(day: date) -> date:
    """The first Monday strictly after ``day``."""
    return day + timedelta(days=7 - day.weekday())


def carryover_window(
    verified_at: datetime,
    tz: tzinfo,
    cutoff_hour: int = 8,
) -> Tuple[datetime, datetime]:
    """
    Carryover interval anchored on a verification timestamp.

    Returns ``(start, end)`` where start is 00:00 on the Friday at or
    before the verification's local date and end is ``cutoff_hour`` on
    the Monday after that Friday. The interval is half-open.
    """
    local = ensure_aware(verified_at).astimezone(tz)
    friday = last_friday_at_or_before(local.date())
    start = datetime.combine(friday, time.min, tzinfo=tz)
    end = datetime.combine(monday_after(friday), time(hour=cutoff_hour), tzinfo=tz)
    return start, end


def is_monday_before_cutoff(moment: datetime, tz: tzinfo, cutoff_hour: int = 8) -> bool:
    local = ensure_aware(moment).astimezone(tz)
    return local.weekday() == MONDAY and local.hour < cutoff_hour
