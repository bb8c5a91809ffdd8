"""
SafeCheck Monitor — Periodic missed check-in sweep.

Safety net behind the deferred tasks: a task can be lost (restart, failed
creation, dispatcher outage). Every SWEEP_INTERVAL_MINUTES the sweep looks
for seniors whose deadline has passed, records any genuine miss that no
task recorded, and re-arms seniors left without a task.

Runs safely next to firing tasks: the deterministic alert id is checked
again inside each write transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.daily_reset import completed_for_day
from src.core.deadline_calculator import (
    local_date,
    materialize_slots,
    missed_check_in_key,
    resolve_timezone,
)
from src.core.missed_check_in import (
    DetectionOutcome,
    MissResult,
    apply_missed_check_in,
    checked_in_for,
    is_first_day,
)

if TYPE_CHECKING:
    from src.core.alert_dispatch import AlertDispatcher
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    from src.data.db import SeniorStateDB, StateTransaction
    from src.data.models import SeniorState

logger = logging.getLogger(__name__)

# How many local days back the sweep looks for unrecorded misses
_LOOKBACK_DAYS = 1


@dataclass
class SweepReport:
    candidates: int = 0
    missed: int = 0
    escalated: int = 0
    rearmed: int = 0
    errors: int = 0


@dataclass
class _Candidate:
    state: SeniorState
    tz_name: str | None
    tz: ZoneInfo
    slots: list[tuple[datetime, str]]   # (slot instant, alert id)


class MissedCheckInSweep:
    """Finds and records misses that no deferred task caught."""

    def __init__(
        self,
        store: SeniorStateDB,
        orchestrator: CheckInTaskOrchestrator,
        alerts: AlertDispatcher | None = None,
        clock: Clock | None = None,
        *,
        grace_minutes: int | None = None,
        escalation_threshold: int | None = None,
        escalation_rate_limit_hours: int | None = None,
        default_timezone: str | None = None,
        default_schedules: list[str] | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._alerts = alerts
        self._clock = clock or SystemClock()
        self._grace = timedelta(minutes=(
            settings.GRACE_PERIOD_MINUTES if grace_minutes is None else grace_minutes
        ))
        self._threshold = (
            settings.ESCALATION_THRESHOLD_DAYS if escalation_threshold is None else escalation_threshold
        )
        self._rate_limit = timedelta(hours=(
            settings.ESCALATION_RATE_LIMIT_HOURS
            if escalation_rate_limit_hours is None else escalation_rate_limit_hours
        ))
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE
        self._default_schedules = list(default_schedules or settings.DEFAULT_SCHEDULES)

    async def run(self) -> SweepReport:
        """One sweep pass over overdue and unarmed seniors."""
        report = SweepReport()
        now = self._clock.now()
        cutoff = now - self._grace

        overdue = self._store.list_overdue(cutoff)
        report.candidates = len(overdue)
        candidates = [c for c in (self._plan(state, now, cutoff) for state in overdue) if c]

        existing = self._store.existing_activity_ids(
            [alert_id for c in candidates for _, alert_id in c.slots]
        )
        for candidate in candidates:
            pending = [(slot, alert_id) for slot, alert_id in candidate.slots
                       if alert_id not in existing]
            if pending:
                await self._process_candidate(candidate, pending, now, report)

        for state in self._store.list_unarmed():
            try:
                if await self._orchestrator.schedule_check_in_task(state.user_id):
                    report.rearmed += 1
            except Exception as exc:
                report.errors += 1
                logger.error("Sweep re-arm failed for user %d: %s", state.user_id, exc)

        logger.info(
            "Sweep: %d overdue, %d missed, %d escalated, %d re-armed, %d errors",
            report.candidates, report.missed, report.escalated, report.rearmed, report.errors,
        )
        return report

    def _plan(self, state: SeniorState, now: datetime, cutoff: datetime) -> _Candidate | None:
        """Past-due, uncompleted slots of an overdue senior, oldest first.

        Only slots a deferred task could have covered count: none before the
        senior registered or before their schedule last changed, and none on
        a sign-up day spent on the default schedule.
        """
        tz_name = self._orchestrator.timezone_name(state.user_id)
        tz = resolve_timezone(tz_name, self._default_timezone)

        deadline = state.next_expected_check_in
        earliest = max(
            t for t in (deadline, state.senior_created_at, state.schedules_updated_at)
            if t is not None
        )
        today = local_date(now, tz)
        day = max(local_date(deadline, tz), today - timedelta(days=_LOOKBACK_DAYS))
        schedules = self._orchestrator.schedules_for(state)

        slots: list[tuple[datetime, str]] = []
        while day <= today:
            completed = set(completed_for_day(state, day))
            for slot in materialize_slots(schedules, day, tz):
                if slot.today < earliest or slot.today > cutoff:
                    continue
                if is_first_day(state, slot.today, tz, self._default_schedules):
                    continue
                if slot.label in completed:
                    continue
                if checked_in_for(state, slot.today, slot.today, tz):
                    continue
                slots.append((slot.today, missed_check_in_key(state.user_id, slot.label, day)))
            day += timedelta(days=1)

        if not slots:
            return None
        return _Candidate(state=state, tz_name=tz_name, tz=tz, slots=slots)

    async def _process_candidate(
        self,
        candidate: _Candidate,
        pending: list[tuple[datetime, str]],
        now: datetime,
        report: SweepReport,
    ) -> None:
        user_id = candidate.state.user_id
        recorded = False
        for slot_time, _ in pending:
            try:
                result = self._store.run_transaction(
                    lambda tx, at=slot_time: self._record(tx, user_id, at, now, candidate.tz)
                )
            except Exception as exc:
                report.errors += 1
                logger.error("Sweep failed to record miss for user %d: %s", user_id, exc)
                continue
            if result.outcome is not DetectionOutcome.MISSED:
                continue

            recorded = True
            report.missed += 1
            logger.warning("Sweep recorded missed check-in %s", result.activity_id)
            if result.escalated:
                report.escalated += 1
            await self._notify(user_id, slot_time, candidate.tz_name, result)

        if not recorded:
            return
        try:
            self._orchestrator.refresh_deadline(user_id)
            await self._orchestrator.schedule_check_in_task(user_id)
        except Exception as exc:
            report.errors += 1
            logger.error("Sweep re-arm failed for user %d: %s", user_id, exc)

    def _record(
        self,
        tx: StateTransaction,
        user_id: int,
        slot_time: datetime,
        now: datetime,
        tz: ZoneInfo,
    ) -> MissResult:
        state = tx.get_state(user_id)
        if state is None:
            return MissResult(DetectionOutcome.NO_STATE)
        if state.vacation_mode:
            return MissResult(DetectionOutcome.VACATION)
        if checked_in_for(state, slot_time, slot_time, tz):
            return MissResult(DetectionOutcome.CHECKED_IN)
        return apply_missed_check_in(
            tx, state, slot_time, now, tz,
            escalation_threshold=self._threshold,
            escalation_rate_limit=self._rate_limit,
        )

    async def _notify(
        self,
        user_id: int,
        slot_time: datetime,
        tz_name: str | None,
        result: MissResult,
    ) -> None:
        if self._alerts is None:
            return
        try:
            await self._alerts.notify_missed_check_in(user_id, slot_time, tz_name)
            if result.escalated:
                await self._alerts.notify_escalation(user_id, result.consecutive_missed_days)
        except Exception as exc:
            logger.error("Sweep alert delivery failed for user %d: %s", user_id, exc)
