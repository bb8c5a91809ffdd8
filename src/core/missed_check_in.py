"""
SafeCheck Monitor — Missed check-in detection.

Runs when a senior's deferred check-in task fires. The state is re-read
inside a transaction at that moment and the miss is only recorded if the
senior really did not check in, is not on vacation and is past the first
day. Every miss is written under a deterministic id, so a repeated firing
for the same schedule and day changes nothing.

Consecutive misses escalate to caregivers, at most once per rate-limit
window. Whatever happens, the senior's next task is re-armed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.config import settings
from src.core.clock import Clock, SystemClock
from src.core.daily_reset import roll_over_changes
from src.core.deadline_calculator import (
    is_same_local_day,
    local_date,
    missed_check_in_key,
    resolve_timezone,
    schedule_label_for,
)
from src.core.schedule_parser import canonical_label
from src.data.models import ACTIVITY_ESCALATION, ACTIVITY_MISSED_CHECK_IN, ActivityLog

if TYPE_CHECKING:
    from src.core.alert_dispatch import AlertDispatcher
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    from src.data.db import SeniorStateDB, StateTransaction
    from src.data.models import SeniorState

logger = logging.getLogger(__name__)


class InvalidTaskPayload(ValueError):
    """The fired task carried a payload that cannot be processed."""


class DetectionOutcome(str, Enum):
    MISSED = "missed"
    ALREADY_RECORDED = "already_recorded"
    CHECKED_IN = "checked_in"
    VACATION = "vacation"
    FIRST_DAY = "first_day"
    NO_STATE = "no_state"


# Outcomes after which the stored nextExpectedCheckIn is recomputed
_REFRESH_OUTCOMES = {
    DetectionOutcome.MISSED,
    DetectionOutcome.CHECKED_IN,
    DetectionOutcome.FIRST_DAY,
}


@dataclass
class TaskPayload:
    """Body of a deferred check-in task."""

    user_id: int
    scheduled_time: datetime
    created_at: datetime
    timezone: str | None = None
    task_id: str | None = None   # handle of the firing task, when known

    @classmethod
    def from_dict(cls, raw: dict) -> TaskPayload:
        if not isinstance(raw, dict):
            raise InvalidTaskPayload("payload must be an object")
        try:
            user_id = int(raw["user_id"])
        except KeyError:
            raise InvalidTaskPayload("missing user_id") from None
        except (TypeError, ValueError):
            raise InvalidTaskPayload(f"invalid user_id {raw.get('user_id')!r}") from None

        tz = raw.get("timezone")
        if tz is not None and not isinstance(tz, str):
            raise InvalidTaskPayload("timezone must be a string")

        return cls(
            user_id=user_id,
            scheduled_time=_parse_instant(raw, "scheduled_time"),
            created_at=_parse_instant(raw, "created_at"),
            timezone=tz or None,
            task_id=raw.get("task_id"),
        )


@dataclass
class TaskResponse:
    """HTTP-like answer to a fired task: 200, 400 or 500."""

    status_code: int
    body: str


@dataclass
class MissResult:
    """What a detection pass decided and wrote."""

    outcome: DetectionOutcome
    activity_id: str | None = None
    consecutive_missed_days: int = 0
    escalated: bool = False


def _parse_instant(raw: dict, key: str) -> datetime:
    value = raw.get(key)
    if value is None:
        raise InvalidTaskPayload(f"missing {key}")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise InvalidTaskPayload(f"invalid {key} {value!r}") from None
    if not isinstance(value, datetime):
        raise InvalidTaskPayload(f"invalid {key} {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Detection rules shared with the periodic sweep
# ---------------------------------------------------------------------------


def is_first_day(
    state: SeniorState,
    at: datetime,
    tz: ZoneInfo,
    default_schedules: list[str],
) -> bool:
    """True when at falls on the senior's sign-up day and they still have the default schedule.

    A new senior has not chosen a time yet, so the default slot is not
    enforced on the day they registered. Evaluated at detection time by the
    task handler and per slot by the sweep.
    """
    if state.senior_created_at is None:
        return False
    if not is_same_local_day(state.senior_created_at, at, tz):
        return False
    schedules = [canonical_label(s) for s in (state.check_in_schedules or default_schedules)]
    defaults = [canonical_label(s) for s in default_schedules]
    return len(defaults) == 1 and schedules == defaults


def checked_in_for(
    state: SeniorState,
    scheduled_time: datetime,
    created_at: datetime,
    tz: ZoneInfo,
) -> bool:
    """A check-in after the task was created, or on the slot's day, clears the slot."""
    if state.last_check_in is None:
        return False
    if state.last_check_in > created_at:
        return True
    return is_same_local_day(state.last_check_in, scheduled_time, tz)


def escalation_key(user_id: int, at: datetime) -> str:
    """Escalation record id, unique per escalation instant (UTC, to the second)."""
    return f"escalation_{user_id}_{at.astimezone(timezone.utc):%Y-%m-%dT%H%M%SZ}"


def apply_missed_check_in(
    tx: StateTransaction,
    state: SeniorState,
    scheduled_time: datetime,
    now: datetime,
    tz: ZoneInfo,
    *,
    escalation_threshold: int,
    escalation_rate_limit: timedelta,
    clear_task_id: bool = False,
) -> MissResult:
    """Record one missed slot and bump counters, unless it is already recorded.

    Must run inside the transaction that read state.
    """
    user_id = state.user_id
    label = schedule_label_for(scheduled_time, tz)
    activity_id = missed_check_in_key(user_id, label, local_date(scheduled_time, tz))
    if tx.activity_exists(activity_id):
        return MissResult(DetectionOutcome.ALREADY_RECORDED, activity_id=activity_id,
                          consecutive_missed_days=state.consecutive_missed_days)

    tx.add_activity(ActivityLog(
        id=activity_id,
        senior_id=user_id,
        activity_type=ACTIVITY_MISSED_CHECK_IN,
        timestamp=now,
        is_alert=True,
        metadata={
            "scheduled_time": label,
            "scheduled_at": scheduled_time.isoformat(),
            "detected_at": now.isoformat(),
        },
    ))

    changes = roll_over_changes(state, local_date(now, tz))
    missed_today = 0 if changes else state.missed_check_ins_today
    count = state.consecutive_missed_days + 1
    changes.update(
        consecutive_missed_days=count,
        missed_check_ins_today=missed_today + 1,
        last_missed_check_in=now,
    )
    if clear_task_id:
        changes["active_task_id"] = None

    escalated = False
    last_escalation = state.last_escalation_notification_at
    if count >= escalation_threshold and (
        last_escalation is None or now - last_escalation >= escalation_rate_limit
    ):
        escalated = tx.add_activity(ActivityLog(
            id=escalation_key(user_id, now),
            senior_id=user_id,
            activity_type=ACTIVITY_ESCALATION,
            timestamp=now,
            is_alert=True,
            metadata={
                "consecutive_missed_days": count,
                "reason": f"{count} consecutive missed check-ins",
            },
        ))
        if escalated:
            changes["last_escalation_notification_at"] = now
        else:
            logger.warning("Escalation record for user %d already exists, not re-sending", user_id)

    tx.update_state(user_id, **changes)
    return MissResult(DetectionOutcome.MISSED, activity_id=activity_id,
                      consecutive_missed_days=count, escalated=escalated)


# ---------------------------------------------------------------------------
# Task handler
# ---------------------------------------------------------------------------


class MissedCheckInDetector:
    """Handles fired check-in tasks."""

    def __init__(
        self,
        store: SeniorStateDB,
        orchestrator: CheckInTaskOrchestrator,
        alerts: AlertDispatcher | None = None,
        clock: Clock | None = None,
        *,
        escalation_threshold: int | None = None,
        escalation_rate_limit_hours: int | None = None,
        default_timezone: str | None = None,
        default_schedules: list[str] | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._alerts = alerts
        self._clock = clock or SystemClock()
        self._threshold = (
            settings.ESCALATION_THRESHOLD_DAYS if escalation_threshold is None else escalation_threshold
        )
        self._rate_limit = timedelta(hours=(
            settings.ESCALATION_RATE_LIMIT_HOURS
            if escalation_rate_limit_hours is None else escalation_rate_limit_hours
        ))
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE
        self._default_schedules = list(default_schedules or settings.DEFAULT_SCHEDULES)

    async def handle_task(self, raw: dict) -> TaskResponse:
        """Entry point for the dispatcher: 400 on a bad payload, 500 on failure."""
        try:
            payload = TaskPayload.from_dict(raw)
        except InvalidTaskPayload as exc:
            logger.warning("Rejected check-in task payload %r: %s", raw, exc)
            return TaskResponse(400, f"invalid payload: {exc}")

        try:
            result = await self.process(payload)
        except Exception as exc:
            logger.error("Missed check-in handling failed for user %d: %s",
                         payload.user_id, exc)
            return TaskResponse(500, "internal error")
        return TaskResponse(200, result.outcome.value)

    async def process(self, payload: TaskPayload) -> MissResult:
        """Verify, record and escalate a possible miss, then re-arm.

        Errors before the miss is written propagate. Errors afterwards are
        logged and never prevent the re-arm.
        """
        user_id = payload.user_id
        now = self._clock.now()
        tz_name = payload.timezone or self._orchestrator.timezone_name(user_id)
        tz = resolve_timezone(tz_name, self._default_timezone)

        result = self._store.run_transaction(lambda tx: self._detect(tx, payload, now, tz))
        logger.info("Check-in task for user %d at %s: %s",
                    user_id, payload.scheduled_time.isoformat(), result.outcome.value)
        if result.outcome is DetectionOutcome.NO_STATE:
            return result

        if result.outcome in _REFRESH_OUTCOMES:
            try:
                self._orchestrator.refresh_deadline(user_id)
            except Exception as exc:
                logger.error("Deadline refresh failed for user %d: %s", user_id, exc)
        if result.outcome is DetectionOutcome.MISSED:
            await self._notify(user_id, payload.scheduled_time, tz_name, result)

        try:
            await self._orchestrator.schedule_check_in_task(
                user_id, not_before=payload.scheduled_time,
            )
        except Exception as exc:
            logger.error("Re-arm failed for user %d: %s", user_id, exc)
        return result

    def _detect(
        self,
        tx: StateTransaction,
        payload: TaskPayload,
        now: datetime,
        tz: ZoneInfo,
    ) -> MissResult:
        state = tx.get_state(payload.user_id)
        if state is None:
            return MissResult(DetectionOutcome.NO_STATE)
        if state.vacation_mode:
            return MissResult(DetectionOutcome.VACATION)
        if checked_in_for(state, payload.scheduled_time, payload.created_at, tz):
            return MissResult(DetectionOutcome.CHECKED_IN)
        if is_first_day(state, now, tz, self._default_schedules):
            return MissResult(DetectionOutcome.FIRST_DAY)

        clear = payload.task_id is None or state.active_task_id == payload.task_id
        return apply_missed_check_in(
            tx, state, payload.scheduled_time, now, tz,
            escalation_threshold=self._threshold,
            escalation_rate_limit=self._rate_limit,
            clear_task_id=clear,
        )

    async def _notify(
        self,
        user_id: int,
        scheduled_time: datetime,
        tz_name: str | None,
        result: MissResult,
    ) -> None:
        if self._alerts is None:
            return
        try:
            await self._alerts.notify_missed_check_in(user_id, scheduled_time, tz_name)
            if result.escalated:
                await self._alerts.notify_escalation(user_id, result.consecutive_missed_days)
        except Exception as exc:
            logger.error("Alert delivery failed for user %d: %s", user_id, exc)
