"""
Manvi Assistant — Time normalization.

Turns a wall-clock time of day into the next absolute instant in the fixed
timezone, and provides a regex-only time extractor used when no
classification provider is reachable.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

_CLOCK_TIME_RE = re.compile(r"(\d{1,2})[:.](\d{2})\s?(AM|PM)", re.IGNORECASE)
_CLOCK_PHRASE_RE = re.compile(r"(at\s+)?\d{1,2}[:.]\d{2}\s?(AM|PM)", re.IGNORECASE)
_REMIND_RE = re.compile(r"remind\s*(me)?", re.IGNORECASE)
_LEADING_FILLER_RE = re.compile(r"^(to|that|about|for)\s+", re.IGNORECASE)

DEFAULT_REMINDER_TEXT = "You have a scheduled reminder!"


def to_due_instant(time_of_day: time, now: datetime, tz: ZoneInfo) -> datetime:
    """Return the next instant strictly after now whose local time is time_of_day.

    Builds the instant on now's calendar date in tz; if that is not strictly
    after now, uses the following calendar day. A naive now is taken to be
    local time in tz. The result is timezone-aware in tz.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    local_now = now.astimezone(tz)
    wall = time_of_day.replace(tzinfo=None)

    candidate = datetime.combine(local_now.date(), wall, tzinfo=tz)
    if candidate <= now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), wall, tzinfo=tz)
    return candidate


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) instants of a calendar day in tz."""
    start = datetime.combine(day, time(0, 0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return start, end


def format_clock(value: datetime, tz: ZoneInfo) -> str:
    """12-hour display time in tz, e.g. "2:12 PM"."""
    local = value.astimezone(tz)
    return f"{local.hour % 12 or 12}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def format_short_datetime(value: datetime, tz: ZoneInfo) -> str:
    """Display date and time in tz, e.g. "Feb 9, 2:12 PM"."""
    local = value.astimezone(tz)
    return f"{local.strftime('%b')} {local.day}, {format_clock(local, tz)}"


# ---------------------------------------------------------------------------
# Regex fallback parser
# ---------------------------------------------------------------------------


def extract_time_of_day(text: str) -> time | None:
    """Find the first "H:MM AM/PM" (or "H.MM pm") in text."""
    match = _CLOCK_TIME_RE.search(text)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2))
    period = match.group(3).upper()
    if not (1 <= hour <= 12 and 0 <= minute <= 59):
        return None

    if period == "PM" and hour != 12:
        hour += 12
    if period == "AM" and hour == 12:
        hour = 0
    return time(hour, minute)


def extract_reminder_instant(
    text: str, now: datetime, tz: ZoneInfo, lead_minutes: int = 1,
) -> datetime | None:
    """Due instant for a reminder phrased with a clock time.

    The reminder fires lead_minutes before the mentioned time, at its next
    occurrence after now. Returns None when text has no clock time.
    """
    mentioned = extract_time_of_day(text)
    if mentioned is None:
        return None

    anchor = datetime.combine(date(2000, 1, 1), mentioned) - timedelta(minutes=lead_minutes)
    return to_due_instant(anchor.time(), now, tz)


def clean_reminder_text(text: str, group_name: str | None = None) -> str:
    """Strip the command words, addressee and time phrase from a reminder."""
    cleaned = _REMIND_RE.sub("", text, count=1)

    if group_name:
        cleaned = re.sub(rf"\b{re.escape(group_name)}\b", "", cleaned, count=1, flags=re.IGNORECASE)

    cleaned = _CLOCK_PHRASE_RE.sub("", cleaned, count=1)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = _LEADING_FILLER_RE.sub("", cleaned).strip()

    return cleaned or DEFAULT_REMINDER_TEXT
