"""Deadline calculator — pure business logic.

Given a senior's daily schedule times, the current instant, the last
check-in and the senior's time zone, computes the single next instant by
which a check-in is expected.

No I/O: this module only transforms data. All returned instants are
timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.schedule_parser import (
    canonical_label,
    format_schedule_label,
    try_parse_schedule_time,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULES = ["11:00 AM"]
DEFAULT_TIMEZONE = "Asia/Karachi"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True)
class ScheduleSlot:
    """One schedule time materialized on a given local day."""

    label: str          # canonical "H:MM AM/PM"
    today: datetime     # aware, in the user's zone
    tomorrow: datetime  # aware, in the user's zone


def resolve_timezone(user_timezone: str | None, default: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """Return the user's zone, or the fallback zone if missing or unknown."""
    if user_timezone and isinstance(user_timezone, str) and user_timezone.strip():
        try:
            return ZoneInfo(user_timezone.strip())
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to %s", user_timezone, default)
    return ZoneInfo(default)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    """Calendar date of an instant in the given zone."""
    return _as_utc(instant).astimezone(tz).date()


def is_same_local_day(a: datetime, b: datetime, tz: ZoneInfo) -> bool:
    return local_date(a, tz) == local_date(b, tz)


def schedule_label_for(instant: datetime, tz: ZoneInfo) -> str:
    """Human-readable schedule label of an instant, e.g. "9:00 AM"."""
    local = _as_utc(instant).astimezone(tz)
    return format_schedule_label(local.hour, local.minute)


def missed_check_in_key(user_id: int | str, label: str, day: date) -> str:
    """Deterministic activity id for a missed check-in.

    The same (user, schedule, local day) always maps to the same id, so a
    duplicate write of the same miss is a no-op.
    """
    return f"missed_{user_id}_{_NON_ALNUM.sub('', label)}_{day.isoformat()}"


def materialize_slots(
    schedules: list[str],
    day: date,
    tz: ZoneInfo,
) -> list[ScheduleSlot]:
    """Build today's and tomorrow's instant for every parseable schedule.

    Unparsable entries are skipped. Duplicate labels collapse into one slot.
    """
    slots: dict[str, ScheduleSlot] = {}
    tomorrow = day + timedelta(days=1)
    for schedule in schedules:
        parsed = try_parse_schedule_time(schedule)
        if parsed is None:
            continue
        wall = time(parsed.hour, parsed.minute)
        slots.setdefault(parsed.label, ScheduleSlot(
            label=parsed.label,
            today=datetime.combine(day, wall, tzinfo=tz),
            tomorrow=datetime.combine(tomorrow, wall, tzinfo=tz),
        ))
    return sorted(slots.values(), key=lambda s: s.today)


def satisfied_schedules(
    schedules: list[str],
    check_in: datetime,
    user_timezone: str | None = None,
    completed_today: list[str] | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> list[str]:
    """Return the labels a check-in satisfies on its local day.

    A check-in satisfies every pending slot already due at the check-in
    instant. When none is due yet, it satisfies the next upcoming slot.
    """
    tz = resolve_timezone(user_timezone, default_timezone)
    check_in_local = _as_utc(check_in).astimezone(tz)
    completed = {canonical_label(s) for s in (completed_today or [])}
    slots = materialize_slots(_effective(schedules), check_in_local.date(), tz)

    pending = [s for s in slots if s.label not in completed]
    due = [s.label for s in pending if s.today <= check_in_local]
    if due:
        return due
    upcoming = [s.label for s in pending if s.today > check_in_local]
    return upcoming[:1]


def calculate_next_expected_check_in(
    schedules: list[str],
    now: datetime,
    last_check_in: datetime | None = None,
    user_timezone: str | None = None,
    completed_today: list[str] | None = None,
    *,
    future_only: bool = False,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> datetime | None:
    """Compute the next deadline a senior is expected to check in by.

    Candidates, in priority order:
      1. today's future slots not yet completed (earliest wins);
      2. today's past-due slots not yet completed, i.e. "running late"
         (earliest wins), skipped when future_only is set;
      3. tomorrow's occurrence of every slot (earliest wins).

    Completed slots are the given labels plus the slots satisfied by
    last_check_in when it falls on today's local date.

    Returns None only when no schedule is parseable.
    """
    tz = resolve_timezone(user_timezone, default_timezone)
    now_local = _as_utc(now).astimezone(tz)
    effective = _effective(schedules)
    slots = materialize_slots(effective, now_local.date(), tz)
    if not slots:
        logger.warning("No parseable schedule in %r", schedules)
        return None

    completed = {canonical_label(s) for s in (completed_today or [])}
    if last_check_in is not None and local_date(last_check_in, tz) == now_local.date():
        completed.update(satisfied_schedules(
            effective, last_check_in, user_timezone,
            completed_today=list(completed), default_timezone=default_timezone,
        ))

    pending = [s for s in slots if s.label not in completed]
    future = [s.today for s in pending if s.today > now_local]
    past_due = [s.today for s in pending if s.today <= now_local]

    if future:
        result = min(future)
    elif past_due and not future_only:
        result = min(past_due)
    else:
        result = min(s.tomorrow for s in slots)
    return result.astimezone(timezone.utc)


def find_next_future_schedule(
    schedules: list[str],
    now: datetime,
    user_timezone: str | None = None,
    completed_today: list[str] | None = None,
    *,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> datetime | None:
    """Next strictly-future deadline, for arming deferred tasks.

    Unlike calculate_next_expected_check_in, past-due slots are never
    returned: a task armed in the past would fire immediately.
    """
    return calculate_next_expected_check_in(
        schedules, now,
        last_check_in=None,
        user_timezone=user_timezone,
        completed_today=completed_today,
        future_only=True,
        default_timezone=default_timezone,
    )


def _effective(schedules: list[str] | None) -> list[str]:
    return list(schedules) if schedules else list(DEFAULT_SCHEDULES)


def _as_utc(instant: datetime) -> datetime:
    # Naive datetimes are treated as UTC
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)
