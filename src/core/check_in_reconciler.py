"""
SafeCheck Monitor — Check-in reconciliation.

A check-in is the one event that clears every alarm: it resets the
consecutive-miss counter, advances the streak, marks the schedule slots it
satisfies as completed for the day, and moves the next deadline forward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.daily_reset import completed_for_day, roll_over_changes
from src.core.deadline_calculator import local_date, resolve_timezone, satisfied_schedules
from src.core.streak import StreakState, compute_streak
from src.core.task_orchestrator import SeniorNotFoundError
from src.data.models import ACTIVITY_CHECK_IN, ActivityLog, CheckInRecord

if TYPE_CHECKING:
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    from src.data.db import SeniorStateDB, StateTransaction

logger = logging.getLogger(__name__)


@dataclass
class CheckInResult:
    """Outcome of a recorded check-in."""

    user_id: int
    timestamp: datetime
    check_in_id: int
    streak: int
    streak_state: StreakState | None
    satisfied: list[str] = field(default_factory=list)
    next_expected_check_in: datetime | None = None
    task_id: str | None = None


class CheckInReconciler:
    """Records check-ins and reconciles the senior state around them."""

    def __init__(
        self,
        store: SeniorStateDB,
        orchestrator: CheckInTaskOrchestrator,
        clock: Clock | None = None,
        *,
        default_timezone: str | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._clock = clock or SystemClock()
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE

    async def record_check_in(
        self,
        user_id: int,
        timestamp: datetime | None = None,
        *,
        mood: str | None = None,
        sleep: str | None = None,
        energy: str | None = None,
        medication: str | None = None,
    ) -> CheckInResult:
        """Record a check-in at timestamp (default: now) and re-arm the next deadline."""
        now = self._clock.now()
        at = timestamp or now
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)

        state = self._store.get_state(user_id)
        if state is None:
            logger.info("Check-in from unregistered user %d, creating default state", user_id)
            state = self._store.create_state(user_id, [], created_at=now)

        if state.active_task_id:
            await self._orchestrator.cancel_task(state.active_task_id)

        tz_name = self._orchestrator.timezone_name(user_id)
        tz = resolve_timezone(tz_name, self._default_timezone)
        day = local_date(at, tz)

        def _apply(tx: StateTransaction) -> CheckInResult:
            current = tx.get_state(user_id)
            if current is None:
                raise SeniorNotFoundError(f"No senior state for user {user_id}")

            streak = compute_streak(
                current.current_streak, current.start_date, current.last_check_in, at, tz,
            )
            changes: dict = {}
            satisfied: list[str] = []
            # A back-dated check-in from an earlier day does not touch today's slots.
            if current.last_schedule_reset_date is None or day >= current.last_schedule_reset_date:
                changes.update(roll_over_changes(current, day))
                completed = completed_for_day(current, day)
                satisfied = satisfied_schedules(
                    self._orchestrator.schedules_for(current), at, tz_name,
                    completed_today=completed, default_timezone=self._default_timezone,
                )
                changes["completed_schedules_today"] = completed + [
                    label for label in satisfied if label not in completed
                ]
                changes["last_schedule_reset_date"] = day

            check_in_id = tx.add_check_in(CheckInRecord(
                user_id=user_id,
                timestamp=at,
                scheduled_for=satisfied,
                scheduled_count=max(len(satisfied), 1),
                mood=mood,
                sleep=sleep,
                energy=energy,
                medication=medication,
            ))
            tx.add_activity(ActivityLog(
                id=f"checkin_{user_id}_{check_in_id}",
                senior_id=user_id,
                activity_type=ACTIVITY_CHECK_IN,
                timestamp=at,
                is_alert=False,
                metadata={"scheduled_for": satisfied, "streak": streak.streak},
            ))

            last = current.last_check_in
            changes.update(
                last_check_in=at if last is None or at > last else last,
                current_streak=streak.streak,
                start_date=streak.start_date,
                consecutive_missed_days=0,
                active_task_id=None,
            )
            tx.update_state(user_id, **changes)
            return CheckInResult(
                user_id=user_id,
                timestamp=at,
                check_in_id=check_in_id,
                streak=streak.streak,
                streak_state=streak.state,
                satisfied=satisfied,
            )

        result = self._store.run_transaction(_apply)
        logger.info(
            "Check-in recorded for user %d (streak %d, satisfied %s)",
            user_id, result.streak, ", ".join(result.satisfied) or "none",
        )

        try:
            result.next_expected_check_in = self._orchestrator.refresh_deadline(user_id)
        except Exception as exc:
            logger.error("Deadline refresh after check-in failed for user %d: %s", user_id, exc)
        try:
            result.task_id = await self._orchestrator.schedule_check_in_task(user_id)
        except Exception as exc:
            logger.error("Re-arm after check-in failed for user %d: %s", user_id, exc)
        return result
