"""Study-day clock.

The branch's accounting day does not end at midnight: it runs from
``STUDY_DAY_START`` (07:30) to ``STUDY_DAY_CUTOVER`` (01:30) the next morning,
so anything before the cutover belongs to the previous day. Weeks start on
``WEEK_STARTS_ON`` using 0=Sunday ... 6=Saturday, which is also the index
used for ``day_of_week`` in absence schedules.
"""

from datetime import datetime, timedelta, date, time
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from .config import Config

KST = ZoneInfo(Config.TIMEZONE)


def now_local() -> datetime:
    return datetime.now(KST)


def ensure_local(dt: Optional[datetime]) -> Optional[datetime]:
    # naive values come back from SQLite and are stored as local wall clock
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=KST)
    return dt.astimezone(KST)


def parse_clock(value: str) -> Tuple[int, int, int]:
    """Split ``HH:MM[:SS]`` into numbers. Hours may exceed 23 (``25:30``)."""
    parts = [int(x) for x in value.strip().split(":")]
    if len(parts) == 2:
        parts.append(0)
    if len(parts) != 3:
        raise ValueError(f"invalid time of day: {value!r}")
    hh, mm, ss = parts
    if hh < 0 or not 0 <= mm < 60 or not 0 <= ss < 60:
        raise ValueError(f"invalid time of day: {value!r}")
    return hh, mm, ss


def parse_time_str(value: str) -> time:
    hh, mm, ss = parse_clock(value)
    return time(hour=hh, minute=mm, second=ss)


def at_clock(d: date, value: str) -> datetime:
    """The local instant of ``value`` on ``d``; hours >= 24 roll into the next day."""
    hh, mm, ss = parse_clock(value)
    base = datetime(d.year, d.month, d.day, tzinfo=KST)
    return base + timedelta(hours=hh, minutes=mm, seconds=ss)


def day_index(d: date) -> int:
    return (d.weekday() + 1) % 7


def study_date(now: Optional[datetime] = None) -> date:
    now = ensure_local(now) or now_local()
    cutover = parse_time_str(Config.STUDY_DAY_CUTOVER)
    if now.time() < cutover:
        return now.date() - timedelta(days=1)
    return now.date()


def study_date_str(now: Optional[datetime] = None) -> str:
    return study_date(now).isoformat()


def study_day_bounds(d: date) -> Tuple[datetime, datetime]:
    """``(start, end)`` of the study day; queries treat both ends as inclusive."""
    start = at_clock(d, Config.STUDY_DAY_START)
    end = at_clock(d + timedelta(days=1), Config.STUDY_DAY_CUTOVER)
    return start, end


def is_within_study_day(now: Optional[datetime] = None) -> bool:
    now = ensure_local(now) or now_local()
    current = now.time()
    return current >= parse_time_str(Config.STUDY_DAY_START) or current < parse_time_str(Config.STUDY_DAY_CUTOVER)


def week_start(now: Optional[datetime] = None) -> date:
    sd = study_date(now)
    diff = (day_index(sd) - Config.WEEK_STARTS_ON) % 7
    return sd - timedelta(days=diff)


def week_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` of the current week on the study-day clock.

    Both ends sit on the cutover, so a session running past midnight stays in
    the week its study day belongs to.
    """
    ws = week_start(now)
    start = at_clock(ws, Config.STUDY_DAY_CUTOVER)
    return start, at_clock(ws + timedelta(days=7), Config.STUDY_DAY_CUTOVER)
