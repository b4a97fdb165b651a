"""
Duty Pharmacy Registry — Duty Window Resolution

A duty day runs from 08:00 to 08:00 the next day on the regional wall
clock (Europe/Istanbul). Everything that stores or queries a duty_date
derives it here; client-supplied dates are only accepted after being
round-tripped through this module.

Wall-clock conversion goes through zoneinfo so the boundary stays at
08:00 local even if the region ever observes daylight-saving time again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from .name_similarity import fold_text


DEFAULT_TIMEZONE = "Europe/Istanbul"
DUTY_START_HOUR = 8

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class DutyWindow:
    """The active duty date and its [start, end) bounds as aware datetimes."""

    duty_date: date
    window_start: datetime
    window_end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.window_start <= moment < self.window_end

    def to_dict(self) -> dict[str, str]:
        return {
            "duty_date": self.duty_date.isoformat(),
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


def window_for(duty_date: date, tz: str = DEFAULT_TIMEZONE) -> DutyWindow:
    """Window of a given duty date: 08:00 local that day → 08:00 local next day."""
    zone = ZoneInfo(tz)
    start = datetime.combine(duty_date, time(DUTY_START_HOUR), tzinfo=zone)
    end = datetime.combine(duty_date + timedelta(days=1), time(DUTY_START_HOUR), tzinfo=zone)
    return DutyWindow(duty_date=duty_date, window_start=start, window_end=end)


def resolve(now: datetime, tz: str = DEFAULT_TIMEZONE) -> DutyWindow:
    """
    Resolve the duty window that contains *now*.

    If the local hour is before 08:00 the effective duty date is the
    previous calendar date, otherwise the current one. *now* must be
    timezone-aware; a naive timestamp has no defined wall clock.
    """
    if now.tzinfo is None or now.tzinfo.utcoffset(now) is None:
        raise ValueError("resolve() requires a timezone-aware timestamp")

    local = now.astimezone(ZoneInfo(tz))
    duty_date = local.date()
    if local.hour < DUTY_START_HOUR:
        duty_date -= timedelta(days=1)
    return window_for(duty_date, tz)


def canonical_duty_date(value: str | date | None, now: datetime, tz: str = DEFAULT_TIMEZONE) -> date:
    """
    Turn an optional client-supplied duty date into a canonical one.

    None → the duty date active at *now*. A string must be YYYY-MM-DD.
    The result is the duty date of the window starting on that day, so a
    value can never bypass the resolver.
    """
    if value is None:
        return resolve(now, tz).duty_date

    if isinstance(value, datetime):
        raise ValueError("duty_date must be a calendar date, not a timestamp")

    if isinstance(value, str):
        if not _DATE_RE.match(value):
            raise ValueError("duty_date must be YYYY-MM-DD")
        value = date.fromisoformat(value)

    return resolve(window_for(value, tz).window_start, tz).duty_date


# ---------------------------------------------------------------------------
# Source dates
# ---------------------------------------------------------------------------

TURKISH_MONTHS = {
    "ocak": 1,
    "subat": 2,
    "mart": 3,
    "nisan": 4,
    "mayis": 5,
    "haziran": 6,
    "temmuz": 7,
    "agustos": 8,
    "eylul": 9,
    "ekim": 10,
    "kasim": 11,
    "aralik": 12,
}

_ISO_IN_TEXT = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[./-](\d{1,2})[./-](\d{4})\b")
_MONTH_NAME_DATE = re.compile(r"\b(\d{1,2})\s+([a-z]+)\s+(\d{4})\b")


def parse_source_date(value: str | date | None) -> date | None:
    """
    Read the roster date a source prints, or None when there is none.

    Accepts 2026-03-10, 10.03.2026 (also with / or -) and Turkish month
    names ("10 Mart 2026 Salı Nöbetçi Eczaneler"), tried in that order.
    """
    if value is None or isinstance(value, datetime):
        return None
    if isinstance(value, date):
        return value

    text = str(value)
    m = _ISO_IN_TEXT.search(text)
    if m:
        year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        m = _NUMERIC_DATE.search(text)
        if m:
            day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        else:
            m = _MONTH_NAME_DATE.search(fold_text(text))
            if not m or m.group(2) not in TURKISH_MONTHS:
                return None
            day, month, year = int(m.group(1)), TURKISH_MONTHS[m.group(2)], int(m.group(3))

    if not 2000 <= year <= 2100:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def accepted_source_dates(now: datetime, tz: str = DEFAULT_TIMEZONE) -> set[date]:
    """
    Roster dates that count as current at *now*.

    The active duty date, plus today's calendar date: before 08:00 a source
    may already show the new day while the previous duty is still running.
    """
    return {resolve(now, tz).duty_date, now.astimezone(ZoneInfo(tz)).date()}
