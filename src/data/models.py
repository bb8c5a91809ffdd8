"""
SafeCheck Monitor — Data Models.

Seniors, their caregivers, and the volatile per-senior monitoring state all
persist in SQLite, surviving bot restarts. Timestamps are timezone-aware UTC
datetimes in memory and ISO-8601 strings on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

ACTIVITY_MISSED_CHECK_IN = "missed_check_in"
ACTIVITY_ESCALATION = "escalation_triggered"
ACTIVITY_CHECK_IN = "check_in"

CONNECTION_ACTIVE = "active"
CONNECTION_PENDING = "pending"
CONNECTION_REMOVED = "removed"


@dataclass
class UserProfile:
    """A registered bot user (senior or caregiver)."""

    user_id: int
    display_name: str
    chat_id: int | None = None
    timezone: str | None = None      # IANA name, e.g. "Asia/Karachi"
    created_at: str = ""


@dataclass
class Connection:
    """Link between a senior and a caregiver (family member)."""

    id: int
    senior_id: int
    family_id: int
    status: str                      # 'active', 'pending', 'removed'
    relationship_type: str | None = None
    created_at: str = ""


@dataclass
class SeniorState:
    """Volatile monitoring state of one senior.

    Owned by the backend: every schedule edit, vacation toggle, check-in
    and confirmed miss goes through a transaction on this row.
    """

    user_id: int
    check_in_schedules: list[str] = field(default_factory=list)
    last_check_in: datetime | None = None
    next_expected_check_in: datetime | None = None
    vacation_mode: bool = False
    active_task_id: str | None = None
    consecutive_missed_days: int = 0
    missed_check_ins_today: int = 0
    completed_schedules_today: list[str] = field(default_factory=list)
    last_schedule_reset_date: date | None = None
    current_streak: int = 0
    start_date: datetime | None = None
    last_escalation_notification_at: datetime | None = None
    last_missed_check_in: datetime | None = None
    senior_created_at: datetime | None = None
    schedules_updated_at: datetime | None = None  # last add/remove of a check-in time
    version: int = 0


@dataclass
class CheckInRecord:
    """A single check-in performed by a senior."""

    user_id: int
    timestamp: datetime
    scheduled_for: list[str] = field(default_factory=list)  # labels satisfied
    scheduled_count: int = 1
    mood: str | None = None
    sleep: str | None = None
    energy: str | None = None
    medication: str | None = None
    id: int | None = None


@dataclass
class ActivityLog:
    """An activity or alert shown on the caregiver dashboard.

    Missed check-ins use a deterministic id so duplicate writes are no-ops.
    """

    id: str
    senior_id: int
    activity_type: str               # see ACTIVITY_* constants
    timestamp: datetime
    is_alert: bool = False
    metadata: dict = field(default_factory=dict)
