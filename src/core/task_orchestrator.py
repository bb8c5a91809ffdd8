"""
SafeCheck Monitor — Deferred check-in task orchestration.

Keeps at most one deferred task armed per senior, firing at the senior's
next strictly-future deadline plus the grace period. activeTaskId on the
senior state records the armed task.

Task creation and cancellation talk to an external dispatcher and never run
inside a store transaction. The handle of a freshly created task is only
recorded if the state is unchanged since it was read; otherwise the new
task is cancelled again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.daily_reset import completed_for_day
from src.core.deadline_calculator import (
    calculate_next_expected_check_in,
    find_next_future_schedule,
    local_date,
    resolve_timezone,
)
from src.ports.task_port import TaskDispatcherError, TransientTaskError

if TYPE_CHECKING:
    from src.data.db import SeniorStateDB, StateTransaction, UserDB
    from src.data.models import SeniorState
    from src.ports.task_port import TaskDispatcherPort

logger = logging.getLogger(__name__)


class StaleStateConflict(Exception):
    """The senior state changed between reading it and recording a new task."""


class SeniorNotFoundError(LookupError):
    """Raised when an operation requires a senior state that does not exist."""


class CheckInTaskOrchestrator:
    """Arms, re-arms and disarms the deferred check-in task of each senior."""

    def __init__(
        self,
        store: SeniorStateDB,
        dispatcher: TaskDispatcherPort,
        user_db: UserDB | None = None,
        clock: Clock | None = None,
        *,
        grace_minutes: int | None = None,
        max_attempts: int | None = None,
        retry_base_seconds: float | None = None,
        default_timezone: str | None = None,
        default_schedules: list[str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._users = user_db
        self._clock = clock or SystemClock()
        self._grace = timedelta(minutes=(
            settings.GRACE_PERIOD_MINUTES if grace_minutes is None else grace_minutes
        ))
        self._max_attempts = max(1, max_attempts or settings.TASK_CREATE_MAX_ATTEMPTS)
        self._retry_base = (
            settings.TASK_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE
        self._default_schedules = list(default_schedules or settings.DEFAULT_SCHEDULES)
        self._sleep = sleep

    # -- Helpers shared with the other services ------------------------------

    def timezone_name(self, user_id: int) -> str | None:
        if self._users is None:
            return None
        return self._users.get_timezone(user_id)

    def schedules_for(self, state: SeniorState) -> list[str]:
        """The senior's schedules, or the configured default when empty."""
        return list(state.check_in_schedules) or list(self._default_schedules)

    def compute_deadline(self, state: SeniorState, now: datetime) -> datetime | None:
        """nextExpectedCheckIn for state at now; None while on vacation."""
        if state.vacation_mode:
            return None
        tz_name = self.timezone_name(state.user_id)
        today = local_date(now, resolve_timezone(tz_name, self._default_timezone))
        return calculate_next_expected_check_in(
            self.schedules_for(state),
            now,
            last_check_in=state.last_check_in,
            user_timezone=tz_name,
            completed_today=completed_for_day(state, today),
            default_timezone=self._default_timezone,
        )

    def refresh_deadline(self, user_id: int) -> datetime | None:
        """Recompute and store nextExpectedCheckIn from the current state."""
        now = self._clock.now()

        def _refresh(tx: StateTransaction) -> datetime | None:
            state = tx.get_state(user_id)
            if state is None:
                raise SeniorNotFoundError(f"No senior state for user {user_id}")
            deadline = self.compute_deadline(state, now)
            if deadline != state.next_expected_check_in:
                tx.update_state(user_id, next_expected_check_in=deadline)
            return deadline

        return self._store.run_transaction(_refresh)

    # -- Arming --------------------------------------------------------------

    async def schedule_check_in_task(
        self, user_id: int, not_before: datetime | None = None,
    ) -> str | None:
        """Replace the senior's deferred task with one for the next future deadline.

        Returns the handle of the newly recorded task, or None when nothing
        is armed (unknown senior, vacation, no parseable schedule, creation
        failure or a concurrent state change).
        """
        state = self._store.get_state(user_id)
        if state is None:
            logger.warning("Not arming check-in task: no state for user %d", user_id)
            return None

        previous = state.active_task_id
        if previous:
            await self.cancel_task(previous)

        if state.vacation_mode:
            self._clear_task_id(user_id, previous)
            logger.info("User %d is on vacation, no check-in task armed", user_id)
            return None

        now = self._clock.now()
        base = max(now, not_before) if not_before is not None else now
        tz_name = self.timezone_name(user_id)
        today = local_date(base, resolve_timezone(tz_name, self._default_timezone))
        deadline = find_next_future_schedule(
            self.schedules_for(state),
            base,
            user_timezone=tz_name,
            completed_today=completed_for_day(state, today),
            default_timezone=self._default_timezone,
        )
        if deadline is None:
            self._clear_task_id(user_id, previous)
            logger.warning("No parseable schedule for user %d, nothing armed", user_id)
            return None

        payload = {
            "user_id": user_id,
            "scheduled_time": deadline.isoformat(),
            "created_at": now.isoformat(),
            "timezone": tz_name or self._default_timezone,
        }
        handle: str | None
        try:
            handle = await self._create_with_retry(deadline + self._grace, payload)
        except Exception as exc:
            logger.error("Could not create check-in task for user %d: %s", user_id, exc)
            handle = None

        def _commit(tx: StateTransaction) -> bool:
            current = tx.get_state(user_id)
            if current is None:
                raise StaleStateConflict("senior state deleted")
            if current.vacation_mode:
                if current.active_task_id is not None:
                    tx.update_state(user_id, active_task_id=None)
                return False
            if current.check_in_schedules != state.check_in_schedules:
                raise StaleStateConflict("schedules changed")
            if current.active_task_id != previous:
                raise StaleStateConflict("another task was recorded")
            tx.update_state(user_id, active_task_id=handle)
            return True

        try:
            recorded = self._store.run_transaction(_commit)
        except StaleStateConflict as exc:
            logger.info("Discarding new check-in task for user %d: %s", user_id, exc)
            recorded = False

        if not recorded:
            if handle is not None:
                await self.cancel_task(handle)
            return None

        if handle is not None:
            logger.info(
                "Check-in task %s armed for user %d at %s",
                handle, user_id, deadline.isoformat(),
            )
        return handle

    async def disarm(self, user_id: int) -> None:
        """Cancel the senior's task and clear activeTaskId."""
        state = self._store.get_state(user_id)
        if state is None or not state.active_task_id:
            return
        await self.cancel_task(state.active_task_id)
        self._clear_task_id(user_id, state.active_task_id)
        logger.info("Check-in task disarmed for user %d", user_id)

    async def rearm_all(self) -> int:
        """Arm a fresh task for every senior not on vacation. Returns the count armed."""
        armed = 0
        for state in self._store.list_states():
            if state.vacation_mode:
                continue
            try:
                if await self.schedule_check_in_task(state.user_id):
                    armed += 1
            except Exception as exc:
                logger.error("Re-arm failed for user %d: %s", state.user_id, exc)
        logger.info("Re-armed check-in tasks for %d senior(s)", armed)
        return armed

    async def cancel_task(self, handle: str) -> bool:
        """Cancel a task by handle. A task that no longer exists counts as cancelled."""
        try:
            found = await self._dispatcher.cancel(handle)
        except TaskDispatcherError as exc:
            logger.warning("Failed to cancel check-in task %s: %s", handle, exc)
            return False
        if not found:
            logger.debug("Check-in task %s already gone", handle)
        return True

    async def _create_with_retry(self, target_time: datetime, payload: dict) -> str:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._dispatcher.create(target_time, payload)
            except TransientTaskError as exc:
                if attempt == self._max_attempts:
                    raise
                delay = self._retry_base * 2 ** (attempt - 1)
                logger.warning(
                    "Task creation attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, self._max_attempts, exc, delay,
                )
                await self._sleep(delay)
        raise RuntimeError("unreachable")

    def _clear_task_id(self, user_id: int, expected: str | None) -> None:
        def _clear(tx: StateTransaction) -> None:
            current = tx.get_state(user_id)
            if current is None or current.active_task_id is None:
                return
            if current.active_task_id == expected:
                tx.update_state(user_id, active_task_id=None)

        self._store.run_transaction(_clear)
