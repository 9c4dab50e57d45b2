"""Natural-language date and time resolution anchored to the business timezone.

All "today" arithmetic happens in ``BUSINESS_TIMEZONE`` (US Eastern by
default), never in UTC: late in the Eastern evening UTC has already rolled
over to tomorrow, which would shift every relative date by one day.

Offsets are looked up per date through ``zoneinfo`` so bookings on either
side of a DST change land on the right UTC instant.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from billi.config import BUSINESS_TIMEZONE

logger = logging.getLogger(__name__)

BUSINESS_TZ = ZoneInfo(BUSINESS_TIMEZONE)

# A bare hour below this is read as PM ("book it at 2" means 14:00).
# It is a guess, not a rule: "7" becomes 19:00 and "8" stays 08:00.
PM_ASSUMPTION_THRESHOLD = 8

_WEEKDAYS = {
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6,
}
_WEEKDAY = (
    r"(monday|mon|tuesday|tues|tue|wednesday|wed|thursday|thurs|thu"
    r"|friday|fri|saturday|sat|sunday|sun)"
)

_NEXT_RE = re.compile(rf"\bnext\s+{_WEEKDAY}\b")
_THIS_RE = re.compile(rf"\b(?:this\s+coming|this|coming)\s+{_WEEKDAY}\b")
_BARE_WEEKDAY_RE = re.compile(rf"^{_WEEKDAY}$")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ORDINAL_RE = re.compile(r"(\d)(st|nd|rd|th)\b")

_SHORTHAND_TIME_RE = re.compile(r"^(\d{1,2})(\d{2})$")
_CLOCK_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(?:([ap])\.?\s*m?\.?)?$")

# Friendly names for the zones the business commonly runs in
_TZ_LABELS = {
    "America/New_York": "Eastern Time",
    "America/Chicago": "Central Time",
    "America/Denver": "Mountain Time",
    "America/Phoenix": "Mountain Time",
    "America/Los_Angeles": "Pacific Time",
    "UTC": "UTC",
}


class ClockTime(NamedTuple):
    """A wall-clock time of day (24h)."""

    hour: int
    minute: int


def timezone_label(tz: ZoneInfo = BUSINESS_TZ) -> str:
    """Human name for *tz*, e.g. ``Eastern Time``; unknown zones use their key."""
    return _TZ_LABELS.get(tz.key, tz.key)


BUSINESS_TZ_LABEL = timezone_label()


# ── "Now" in the business timezone ───────────────────────────────────


def business_now(reference_now: datetime | None = None) -> datetime:
    """Return *reference_now* (default: the current instant) in the business timezone."""
    now = reference_now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(BUSINESS_TZ)


def business_today(reference_now: datetime | None = None) -> date:
    """Return today's civil date in the business timezone."""
    return business_now(reference_now).date()


# ── Date phrases ─────────────────────────────────────────────────────


def resolve_date(phrase: str | None, reference_now: datetime | None = None) -> str:
    """Convert a date phrase into a ``YYYY-MM-DD`` string.

    Handles ``today``/``tomorrow``/``yesterday``, ``next <weekday>``,
    ``this <weekday>``, ``this coming <weekday>``, ``coming <weekday>``,
    a bare weekday (same as ``this``), ``M/D/YYYY`` and ``YYYY-MM-DD``,
    then whatever ``dateutil`` can read ("Sept 5, 2026", "1-16-2026").
    Anything else falls back to
    today with a warning instead of raising.
    """
    today = business_today(reference_now)
    text = (phrase or "").strip().lower()

    if not text or text == "today":
        return today.isoformat()
    if text == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    if text == "yesterday":
        return (today - timedelta(days=1)).isoformat()

    if match := _NEXT_RE.search(text):
        target = _WEEKDAYS[match.group(1)[:3]]
        # "next monday" on a Monday is a week out, never today
        days = (target - today.weekday()) % 7 or 7
        return (today + timedelta(days=days)).isoformat()

    if match := _THIS_RE.search(text) or _BARE_WEEKDAY_RE.match(text):
        target = _WEEKDAYS[match.group(1)[:3]]
        days = (target - today.weekday()) % 7
        if days == 0 and "coming" in text:
            days = 7
        return (today + timedelta(days=days)).isoformat()

    if _ISO_DATE_RE.match(text):
        return text

    if match := _US_DATE_RE.match(text):
        month, day, year = (int(g) for g in match.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            logger.warning("Invalid calendar date %r, falling back to today", phrase)
            return today.isoformat()

    parsed = _parse_generic_date(text, today)
    if parsed is not None:
        return parsed.isoformat()

    logger.warning("Could not parse date %r, falling back to today (%s)", phrase, today)
    return today.isoformat()


def _parse_generic_date(text: str, today: date) -> date | None:
    """Best-effort parse of spelled-out dates ("January 16, 2026", "Sept 5", "1-16-2026")."""
    cleaned = _ORDINAL_RE.sub(r"\1", text).strip()
    if not cleaned:
        return None

    # Missing fields (usually the year) come from today
    default = datetime(today.year, today.month, today.day)
    try:
        return date_parser.parse(cleaned, default=default).date()
    except (ValueError, OverflowError):
        return None


# ── Time phrases ─────────────────────────────────────────────────────


def resolve_clock_time(phrase: str) -> ClockTime:
    """Parse ``2``, ``2pm``, ``11:00 AM``, ``14:30`` or ``930`` into a ClockTime.

    When no AM/PM marker is given and the hour is below
    ``PM_ASSUMPTION_THRESHOLD``, the hour is assumed to be PM.

    Raises ``ValueError`` for anything that is not a time of day.
    """
    text = (phrase or "").strip().lower()

    if shorthand := _SHORTHAND_TIME_RE.match(text):
        text = f"{shorthand.group(1)}:{shorthand.group(2)}"

    match = _CLOCK_TIME_RE.match(text)
    if not match:
        raise ValueError(f"Could not understand the time {phrase!r}")

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    period = match.group(3)

    if minute > 59:
        raise ValueError(f"Invalid minutes in {phrase!r}")

    if period:
        if not 1 <= hour <= 12:
            raise ValueError(f"Invalid hour for a 12-hour time in {phrase!r}")
        if period == "p" and hour < 12:
            hour += 12
        elif period == "a" and hour == 12:
            hour = 0
    elif 1 <= hour < PM_ASSUMPTION_THRESHOLD:
        hour += 12

    if hour > 23:
        raise ValueError(f"Invalid hour in {phrase!r}")

    return ClockTime(hour, minute)


def to_zoned_instant(time_of_day: ClockTime | str, on_date: str) -> datetime:
    """Combine a business-timezone wall-clock time and date into a UTC instant.

    The UTC offset comes from the timezone database for *on_date* itself,
    so 9:00 is 14:00 UTC in January and 13:00 UTC in July.
    """
    clock = resolve_clock_time(time_of_day) if isinstance(time_of_day, str) else time_of_day
    day = date.fromisoformat(on_date)
    local = datetime(day.year, day.month, day.day, clock.hour, clock.minute, tzinfo=BUSINESS_TZ)
    return local.astimezone(UTC)


def business_day_bounds(on_date: str) -> tuple[datetime, datetime]:
    """Return ``[local midnight, next local midnight)`` for *on_date* as UTC instants."""
    day = date.fromisoformat(on_date)
    start = datetime(day.year, day.month, day.day, tzinfo=BUSINESS_TZ)
    nxt = day + timedelta(days=1)
    end = datetime(nxt.year, nxt.month, nxt.day, tzinfo=BUSINESS_TZ)
    return start.astimezone(UTC), end.astimezone(UTC)


def business_hours(on_date: str, open_hour: int, close_hour: int) -> tuple[datetime, datetime]:
    """Return the business-hours window for *on_date* as UTC instants."""
    return (
        to_zoned_instant(ClockTime(open_hour, 0), on_date),
        to_zoned_instant(ClockTime(close_hour, 0), on_date),
    )


def parse_instant(value: str, on_date: str | None = None) -> datetime:
    """Parse a tool-supplied start/end value into an aware UTC datetime.

    Accepts ISO date-times (naive ones are read in the business timezone)
    or a clock phrase, which is placed on *on_date* (default: today).
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("A date-time value is required")

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return to_zoned_instant(text, on_date or business_today().isoformat())

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=BUSINESS_TZ)
    return parsed.astimezone(UTC)


# ── Formatting ───────────────────────────────────────────────────────


def format_clock(instant: datetime) -> str:
    """Format an instant as business-timezone wall time, e.g. ``9:30 AM``."""
    local = instant.astimezone(BUSINESS_TZ)
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{local.hour % 12 or 12}:{local.minute:02d} {suffix}"


def format_long_date(instant: datetime) -> str:
    """Format as ``Friday, January 16, 2026`` in the business timezone."""
    local = instant.astimezone(BUSINESS_TZ)
    return f"{local.strftime('%A, %B')} {local.day}, {local.year}"


def day_of_week(on_date: str) -> str:
    """Return the weekday name for a ``YYYY-MM-DD`` string."""
    return date.fromisoformat(on_date).strftime("%A")


def format_duration(minutes: int) -> str:
    """Human-friendly duration: ``30 minutes``, ``1 hour``, ``1 hour 30 minutes``."""
    hours, mins = divmod(minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if mins or not hours:
        parts.append(f"{mins} minute{'s' if mins != 1 else ''}")
    return " ".join(parts)
