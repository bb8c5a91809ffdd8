"""
SafeCheck Monitor — Schedule management.

Registration, schedule edits, vacation toggles and caregiver connections.
Every mutation updates nextExpectedCheckIn in the same transaction and then
re-arms (or disarms) the senior's deferred task.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.schedule_parser import canonical_label, normalize_schedule, sort_schedules
from src.core.task_orchestrator import SeniorNotFoundError
from src.data.models import CONNECTION_REMOVED

if TYPE_CHECKING:
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    from src.data.db import SeniorStateDB, StateTransaction, UserDB
    from src.data.models import Connection, SeniorState

logger = logging.getLogger(__name__)


class ScheduleService:
    """User-facing operations that change a senior's schedule or status."""

    def __init__(
        self,
        store: SeniorStateDB,
        user_db: UserDB,
        orchestrator: CheckInTaskOrchestrator,
        clock: Clock | None = None,
        *,
        default_schedules: list[str] | None = None,
    ) -> None:
        self._store = store
        self._users = user_db
        self._orchestrator = orchestrator
        self._clock = clock or SystemClock()
        self._default_schedules = [
            normalize_schedule(s) for s in (default_schedules or settings.DEFAULT_SCHEDULES)
        ]

    # -- Registration --------------------------------------------------------

    async def register_senior(
        self,
        user_id: int,
        display_name: str,
        chat_id: int | None = None,
        timezone: str | None = None,
    ) -> SeniorState:
        """Create (or refresh) the senior's profile and state, then arm the first task."""
        if self._users.is_registered(user_id):
            self._users.update_user(user_id, display_name=display_name, chat_id=chat_id)
            if timezone:
                self._users.set_timezone(user_id, timezone)
        else:
            self._users.add_user(user_id, display_name, chat_id=chat_id, timezone=timezone)

        if self._store.get_state(user_id) is None:
            self._store.create_state(
                user_id, list(self._default_schedules), created_at=self._clock.now(),
            )
            logger.info("Senior %d registered with schedules %s", user_id, self._default_schedules)

        self._orchestrator.refresh_deadline(user_id)
        await self._orchestrator.schedule_check_in_task(user_id)
        return self.get_state(user_id)

    def get_state(self, user_id: int) -> SeniorState:
        state = self._store.get_state(user_id)
        if state is None:
            raise SeniorNotFoundError(f"User {user_id} is not a registered senior")
        return state

    # -- Schedules -----------------------------------------------------------

    def get_schedules(self, user_id: int) -> list[str]:
        """The senior's schedules in chronological order; persists the default if empty."""
        state = self.get_state(user_id)
        if state.check_in_schedules:
            return sort_schedules(state.check_in_schedules)

        defaults = list(self._default_schedules)

        def _persist(tx: StateTransaction) -> None:
            current = tx.get_state(user_id)
            if current is not None and not current.check_in_schedules:
                tx.update_state(user_id, check_in_schedules=defaults)

        self._store.run_transaction(_persist)
        return defaults

    async def add_schedule(self, user_id: int, raw: str) -> list[str]:
        """Add a schedule time. Raises ScheduleParseError for unparsable input."""
        label = normalize_schedule(raw)
        now = self._clock.now()

        def _add(tx: StateTransaction) -> tuple[list[str], bool]:
            current = self._require(tx, user_id)
            schedules = list(current.check_in_schedules) or list(self._default_schedules)
            if label in {canonical_label(s) for s in schedules}:
                return sort_schedules(schedules), False
            updated = sort_schedules(schedules + [label])
            self._write_schedules(tx, current, updated, now)
            return updated, True

        schedules, changed = self._store.run_transaction(_add)
        if changed:
            logger.info("Schedule %s added for user %d", label, user_id)
            await self._orchestrator.schedule_check_in_task(user_id)
        return schedules

    async def remove_schedule(self, user_id: int, raw: str) -> list[str]:
        """Remove a schedule time. An emptied list falls back to the default."""
        label = normalize_schedule(raw)
        now = self._clock.now()

        def _remove(tx: StateTransaction) -> tuple[list[str], bool]:
            current = self._require(tx, user_id)
            schedules = list(current.check_in_schedules) or list(self._default_schedules)
            updated = [s for s in schedules if canonical_label(s) != label]
            if len(updated) == len(schedules):
                return sort_schedules(schedules), False
            self._write_schedules(tx, current, updated, now)
            return sort_schedules(updated) or list(self._default_schedules), True

        schedules, changed = self._store.run_transaction(_remove)
        if changed:
            logger.info("Schedule %s removed for user %d", label, user_id)
            await self._orchestrator.schedule_check_in_task(user_id)
        return schedules

    # -- Vacation ------------------------------------------------------------

    async def set_vacation_mode(self, user_id: int, enabled: bool) -> SeniorState:
        """Pause (enabled) or resume monitoring."""
        now = self._clock.now()

        def _toggle(tx: StateTransaction) -> None:
            current = self._require(tx, user_id)
            deadline = None
            if not enabled:
                deadline = self._orchestrator.compute_deadline(
                    replace(current, vacation_mode=False), now,
                )
            tx.update_state(user_id, vacation_mode=enabled, next_expected_check_in=deadline)

        self._store.run_transaction(_toggle)
        if enabled:
            await self._orchestrator.disarm(user_id)
        else:
            await self._orchestrator.schedule_check_in_task(user_id)
        logger.info("Vacation mode %s for user %d", "on" if enabled else "off", user_id)
        return self.get_state(user_id)

    # -- Caregivers ----------------------------------------------------------

    def connect_caregiver(
        self, senior_id: int, family_id: int, relationship_type: str | None = None,
    ) -> Connection:
        """Connect a caregiver to a registered senior; the connection is active at once."""
        if senior_id == family_id:
            raise ValueError("A senior cannot watch themselves")
        self.get_state(senior_id)
        return self._users.add_connection(
            senior_id, family_id, relationship_type=relationship_type,
        )

    def disconnect_caregiver(self, senior_id: int, family_id: int) -> bool:
        removed = self._users.set_connection_status(senior_id, family_id, CONNECTION_REMOVED)
        if removed:
            logger.info("Caregiver %d disconnected from senior %d", family_id, senior_id)
        return removed

    # -- Internals -----------------------------------------------------------

    @staticmethod
    def _require(tx: StateTransaction, user_id: int) -> SeniorState:
        current = tx.get_state(user_id)
        if current is None:
            raise SeniorNotFoundError(f"User {user_id} is not a registered senior")
        return current

    def _write_schedules(
        self,
        tx: StateTransaction,
        current: SeniorState,
        schedules: list[str],
        now: datetime,
    ) -> None:
        deadline = self._orchestrator.compute_deadline(
            replace(current, check_in_schedules=schedules), now,
        )
        tx.update_state(
            current.user_id,
            check_in_schedules=schedules,
            next_expected_check_in=deadline,
            schedules_updated_at=now,
        )
