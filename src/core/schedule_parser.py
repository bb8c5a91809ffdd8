"""Schedule time parser — pure business logic.

Converts free-form "H:MM AM/PM" strings into 24-hour (hour, minute) pairs
and back into the canonical label stored on the senior state.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PERIOD = re.compile(r"(AM|PM)$")


class ScheduleParseError(ValueError):
    """Raised when a schedule string is not a valid "H:MM AM/PM" time."""


@dataclass(frozen=True)
class ScheduleTime:
    """A daily schedule time in 24-hour form."""

    hour: int      # 0-23
    minute: int    # 0-59

    @property
    def label(self) -> str:
        return format_schedule_label(self.hour, self.minute)


def parse_schedule_time(raw: str) -> ScheduleTime:
    """Parse "9:00 AM", "9:00am", " 12:30  pm " into a ScheduleTime.

    Raises ScheduleParseError on anything else.
    """
    if not isinstance(raw, str):
        raise ScheduleParseError(f"Schedule must be a string, got {type(raw).__name__}")

    normalized = _WHITESPACE.sub(" ", raw.strip().upper())
    normalized = _TRAILING_PERIOD.sub(r" \1", normalized).strip()
    normalized = _WHITESPACE.sub(" ", normalized)

    parts = normalized.split(" ")
    if len(parts) != 2:
        raise ScheduleParseError(f"Expected 'H:MM AM/PM', got {raw!r}")

    time_part, period = parts
    if period not in ("AM", "PM"):
        raise ScheduleParseError(f"Unknown period {period!r} in {raw!r}")

    time_parts = time_part.split(":")
    if len(time_parts) != 2:
        raise ScheduleParseError(f"No single colon in time part: {time_part!r}")

    hour_str, minute_str = time_parts
    if not (hour_str.isdigit() and minute_str.isdigit()):
        raise ScheduleParseError(f"Non-numeric time in {raw!r}")

    hour, minute = int(hour_str), int(minute_str)
    if not (1 <= hour <= 12 and 0 <= minute <= 59):
        raise ScheduleParseError(f"Hour/minute out of range: {hour}:{minute}")

    if period == "PM" and hour != 12:
        hour += 12
    if period == "AM" and hour == 12:
        hour = 0

    return ScheduleTime(hour=hour, minute=minute)


def try_parse_schedule_time(raw: str) -> ScheduleTime | None:
    """Like parse_schedule_time, but returns None on invalid input."""
    try:
        return parse_schedule_time(raw)
    except ScheduleParseError as exc:
        logger.debug("Skipping unparsable schedule %r: %s", raw, exc)
        return None


def format_schedule_label(hour: int, minute: int) -> str:
    """Format a 24-hour time as the canonical "H:MM AM/PM" label."""
    period = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {period}"


def normalize_schedule(raw: str) -> str:
    """Return the canonical label for a schedule string, or raise."""
    return parse_schedule_time(raw).label


def canonical_label(raw: str) -> str:
    """Canonical label for set comparisons.

    Unparsable strings keep their trimmed uppercase form so they still
    compare equal to themselves.
    """
    parsed = try_parse_schedule_time(raw)
    if parsed is None:
        return str(raw).strip().upper()
    return parsed.label


def sort_schedules(schedules: list[str]) -> list[str]:
    """Sort schedules chronologically for display. Unparsable entries go last."""
    def _key(schedule: str) -> tuple[int, int]:
        parsed = try_parse_schedule_time(schedule)
        if parsed is None:
            return (1, 0)
        return (0, parsed.hour * 60 + parsed.minute)

    return sorted(schedules, key=_key)
