"""Daily counter reset.

missedCheckInsToday and completedSchedulesToday describe one local calendar
day of the senior. They roll over when the senior's local date moves past
last_schedule_reset_date: lazily inside every check-in and miss
transaction, and eagerly by the periodic reset job for idle seniors.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.deadline_calculator import local_date, resolve_timezone

if TYPE_CHECKING:
    from src.data.db import SeniorStateDB, StateTransaction, UserDB
    from src.data.models import SeniorState

logger = logging.getLogger(__name__)


def completed_for_day(state: SeniorState, day: date) -> list[str]:
    """Schedules completed on day; stale lists from an earlier day count as empty."""
    if state.last_schedule_reset_date != day:
        return []
    return list(state.completed_schedules_today)


def roll_over_changes(state: SeniorState, day: date) -> dict:
    """Field changes that start a new counter day, or {} if already current."""
    if state.last_schedule_reset_date == day:
        return {}
    return {
        "missed_check_ins_today": 0,
        "completed_schedules_today": [],
        "last_schedule_reset_date": day,
    }


class DailyCounterReset:
    """Resets per-day counters for every senior whose local day has changed."""

    def __init__(
        self,
        store: SeniorStateDB,
        user_db: UserDB | None = None,
        clock: Clock | None = None,
        default_timezone: str | None = None,
    ) -> None:
        self._store = store
        self._users = user_db
        self._clock = clock or SystemClock()
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE

    def reset_daily_counters(self) -> int:
        """Roll over every senior whose local date changed. Returns the count reset."""
        now = self._clock.now()
        reset = 0
        for state in self._store.list_states():
            tz_name = self._users.get_timezone(state.user_id) if self._users else None
            today = local_date(now, resolve_timezone(tz_name, self._default_timezone))
            if not roll_over_changes(state, today):
                continue
            try:
                if self._store.run_transaction(
                    lambda tx, uid=state.user_id, day=today: self._apply(tx, uid, day)
                ):
                    reset += 1
            except Exception as exc:
                logger.error("Daily reset failed for user %d: %s", state.user_id, exc)

        if reset:
            logger.info("Daily counters reset for %d senior(s)", reset)
        return reset

    @staticmethod
    def _apply(tx: StateTransaction, user_id: int, day: date) -> bool:
        current = tx.get_state(user_id)
        if current is None:
            return False
        changes = roll_over_changes(current, day)
        if not changes:
            return False
        tx.update_state(user_id, **changes)
        return True
