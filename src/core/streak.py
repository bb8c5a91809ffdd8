"""Check-in streak state machine — pure business logic.

Each new check-in is classified against the previous one as same-day,
consecutive or broken, and the streak counter moves accordingly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo

from src.core.deadline_calculator import local_date


class StreakState(str, Enum):
    SAME_DAY = "same_day"        # 0 days since last check-in
    CONSECUTIVE = "consecutive"  # 1 day since last check-in
    BROKEN = "broken"            # 2+ days since last check-in


@dataclass
class StreakUpdate:
    streak: int
    start_date: datetime
    state: StreakState | None  # None when there was no previous check-in


def classify_streak(last: datetime, new: datetime, tz: ZoneInfo) -> StreakState:
    """Classify the calendar-day gap between two check-ins in the user's zone."""
    diff = (local_date(new, tz) - local_date(last, tz)).days
    if diff <= 0:
        return StreakState.SAME_DAY
    if diff == 1:
        return StreakState.CONSECUTIVE
    return StreakState.BROKEN


def compute_streak(
    current_streak: int,
    start_date: datetime | None,
    last_check_in: datetime | None,
    check_in_time: datetime,
    tz: ZoneInfo,
) -> StreakUpdate:
    """Return the streak and start date after a check-in at check_in_time."""
    current = max(current_streak, 0)

    if last_check_in is None:
        if current > 0:
            # Stored streak without a last check-in is inconsistent: reset.
            return StreakUpdate(1, check_in_time, StreakState.BROKEN)
        return StreakUpdate(1, start_date or check_in_time, None)

    state = classify_streak(last_check_in, check_in_time, tz)
    if state is StreakState.SAME_DAY:
        return StreakUpdate(max(current, 1), start_date or check_in_time, state)
    if state is StreakState.CONSECUTIVE:
        return StreakUpdate(current + 1, start_date or check_in_time, state)
    return StreakUpdate(1, check_in_time, state)
