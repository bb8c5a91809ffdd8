"""
SafeCheck Monitor — SQLite storage.

The transactional store behind the monitor. Every state-changing operation
on a senior runs inside one short `BEGIN IMMEDIATE` transaction on that
senior's row; alert records use deterministic ids so duplicate writes are
no-ops.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time as _time
from contextlib import contextmanager
from dataclasses import fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from src.data.models import (
    CONNECTION_ACTIVE,
    ActivityLog,
    CheckInRecord,
    Connection,
    SeniorState,
    UserProfile,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IN_CHUNK_SIZE = 500

_DATETIME_FIELDS = {
    "last_check_in",
    "next_expected_check_in",
    "start_date",
    "last_escalation_notification_at",
    "last_missed_check_in",
    "senior_created_at",
    "schedules_updated_at",
}
_LIST_FIELDS = {"check_in_schedules", "completed_schedules_today"}
_BOOL_FIELDS = {"vacation_mode"}
_STATE_FIELDS = {f.name for f in fields(SeniorState)} - {"user_id", "version"}


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _dt_to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt_from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _state_value_to_db(name: str, value: Any) -> Any:
    if name in _DATETIME_FIELDS:
        return _dt_to_db(value)
    if name in _LIST_FIELDS:
        return json.dumps(list(value or []))
    if name in _BOOL_FIELDS:
        return int(bool(value))
    if name == "last_schedule_reset_date":
        return value.isoformat() if value else None
    return value


def _row_to_state(row: sqlite3.Row) -> SeniorState:
    return SeniorState(
        user_id=row["user_id"],
        check_in_schedules=json.loads(row["check_in_schedules"] or "[]"),
        last_check_in=_dt_from_db(row["last_check_in"]),
        next_expected_check_in=_dt_from_db(row["next_expected_check_in"]),
        vacation_mode=bool(row["vacation_mode"]),
        active_task_id=row["active_task_id"],
        consecutive_missed_days=row["consecutive_missed_days"],
        missed_check_ins_today=row["missed_check_ins_today"],
        completed_schedules_today=json.loads(row["completed_schedules_today"] or "[]"),
        last_schedule_reset_date=(
            date.fromisoformat(row["last_schedule_reset_date"])
            if row["last_schedule_reset_date"] else None
        ),
        current_streak=row["current_streak"],
        start_date=_dt_from_db(row["start_date"]),
        last_escalation_notification_at=_dt_from_db(row["last_escalation_notification_at"]),
        last_missed_check_in=_dt_from_db(row["last_missed_check_in"]),
        senior_created_at=_dt_from_db(row["senior_created_at"]),
        schedules_updated_at=_dt_from_db(row["schedules_updated_at"]),
        version=row["version"],
    )


def _row_to_activity(row: sqlite3.Row) -> ActivityLog:
    return ActivityLog(
        id=row["id"],
        senior_id=row["senior_id"],
        activity_type=row["activity_type"],
        timestamp=_dt_from_db(row["timestamp"]),
        is_alert=bool(row["is_alert"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_check_in(row: sqlite3.Row) -> CheckInRecord:
    return CheckInRecord(
        id=row["id"],
        user_id=row["user_id"],
        timestamp=_dt_from_db(row["timestamp"]),
        scheduled_for=json.loads(row["scheduled_for"] or "[]"),
        scheduled_count=row["scheduled_count"],
        mood=row["mood"],
        sleep=row["sleep"],
        energy=row["energy"],
        medication=row["medication"],
    )


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


# ---------------------------------------------------------------------------
# Transaction handle
# ---------------------------------------------------------------------------


class StateTransaction:
    """Reads and writes performed inside one atomic unit.

    Obtained from SeniorStateDB.transaction(); never create directly.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_state(self, user_id: int) -> SeniorState | None:
        row = self._conn.execute(
            "SELECT * FROM senior_states WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        return _row_to_state(row)

    def insert_state(self, state: SeniorState) -> None:
        columns = ["user_id", *sorted(_STATE_FIELDS)]
        values = [state.user_id] + [
            _state_value_to_db(name, getattr(state, name)) for name in sorted(_STATE_FIELDS)
        ]
        placeholders = ", ".join("?" for _ in columns)
        self._conn.execute(
            f"INSERT INTO senior_states ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    def update_state(self, user_id: int, **changes: Any) -> None:
        """Update the given fields and bump the row version."""
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown senior state fields: {sorted(unknown)}")
        if not changes:
            return
        assignments = ", ".join(f"{name} = ?" for name in changes)
        values = [_state_value_to_db(name, value) for name, value in changes.items()]
        self._conn.execute(
            f"UPDATE senior_states SET {assignments}, version = version + 1 WHERE user_id = ?",
            (*values, user_id),
        )

    def activity_exists(self, activity_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM activity_logs WHERE id = ?", (activity_id,)
        ).fetchone()
        return row is not None

    def add_activity(self, activity: ActivityLog) -> bool:
        """Insert an activity record. Returns False if the id already exists."""
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO activity_logs
                (id, senior_id, activity_type, timestamp, is_alert, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                activity.id,
                activity.senior_id,
                activity.activity_type,
                _dt_to_db(activity.timestamp),
                int(activity.is_alert),
                json.dumps(activity.metadata or {}),
            ),
        )
        return cursor.rowcount > 0

    def add_check_in(self, record: CheckInRecord) -> int:
        cursor = self._conn.execute(
            """
            INSERT INTO check_ins
                (user_id, timestamp, scheduled_for, scheduled_count,
                 mood, sleep, energy, medication)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.user_id,
                _dt_to_db(record.timestamp),
                json.dumps(record.scheduled_for),
                record.scheduled_count,
                record.mood,
                record.sleep,
                record.energy,
                record.medication,
            ),
        )
        return cursor.lastrowid


# ---------------------------------------------------------------------------
# Senior state store
# ---------------------------------------------------------------------------


class SeniorStateDB:
    """SQLite-backed storage for senior state, check-ins and activity logs."""

    def __init__(
        self,
        db_path: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int = 3,
    ) -> None:
        if db_path is None or timeout_seconds is None:
            from src.config import settings
            db_path = db_path or settings.DATABASE_PATH
            timeout_seconds = timeout_seconds or settings.DB_TIMEOUT_SECONDS

        self._db_path = db_path
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS senior_states (
                    user_id                          INTEGER PRIMARY KEY,
                    check_in_schedules               TEXT    NOT NULL DEFAULT '[]',
                    last_check_in                    TEXT,
                    next_expected_check_in           TEXT,
                    vacation_mode                    INTEGER NOT NULL DEFAULT 0,
                    active_task_id                   TEXT,
                    consecutive_missed_days          INTEGER NOT NULL DEFAULT 0,
                    missed_check_ins_today           INTEGER NOT NULL DEFAULT 0,
                    completed_schedules_today        TEXT    NOT NULL DEFAULT '[]',
                    last_schedule_reset_date         TEXT,
                    current_streak                   INTEGER NOT NULL DEFAULT 0,
                    start_date                       TEXT,
                    last_escalation_notification_at  TEXT,
                    last_missed_check_in             TEXT,
                    senior_created_at                TEXT,
                    schedules_updated_at             TEXT,
                    version                          INTEGER NOT NULL DEFAULT 0
                )
            """)
            # Migrate: add columns missing from older databases
            existing = {
                row[1] for row in conn.execute("PRAGMA table_info(senior_states)").fetchall()
            }
            if "schedules_updated_at" not in existing:
                conn.execute("ALTER TABLE senior_states ADD COLUMN schedules_updated_at TEXT")
            # Sweep query: vacation_mode = 0 AND next_expected_check_in < cutoff
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_senior_states_deadline
                ON senior_states (vacation_mode, next_expected_check_in)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS check_ins (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id          INTEGER NOT NULL,
                    timestamp        TEXT    NOT NULL,
                    scheduled_for    TEXT    NOT NULL DEFAULT '[]',
                    scheduled_count  INTEGER NOT NULL DEFAULT 1,
                    mood             TEXT,
                    sleep            TEXT,
                    energy           TEXT,
                    medication       TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_logs (
                    id             TEXT    PRIMARY KEY,
                    senior_id      INTEGER NOT NULL,
                    activity_type  TEXT    NOT NULL,
                    timestamp      TEXT    NOT NULL,
                    is_alert       INTEGER NOT NULL DEFAULT 0,
                    metadata       TEXT    NOT NULL DEFAULT '{}'
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_activity_logs_senior
                ON activity_logs (senior_id, timestamp)
            """)
        finally:
            conn.close()
        logger.debug("Senior state tables initialized at %s", self._db_path)

    @contextmanager
    def transaction(self) -> Iterator[StateTransaction]:
        """Open one atomic unit. Commits on success, rolls back on any error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StateTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def run_transaction(self, fn: Callable[[StateTransaction], T]) -> T:
        """Run fn inside a transaction, retrying when the database is locked.

        fn must only touch the store through the transaction handle, so a
        retried attempt re-reads fresh state.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                with self.transaction() as tx:
                    return fn(tx)
            except sqlite3.OperationalError as exc:
                if not _is_lock_error(exc) or attempt == self._max_attempts:
                    raise
                logger.warning("Transaction attempt %d hit a lock, retrying: %s", attempt, exc)
                _time.sleep(0.05 * attempt)
        raise RuntimeError("unreachable")

    # -- Keyed reads ---------------------------------------------------------

    def get_state(self, user_id: int) -> SeniorState | None:
        """Fetch a senior's state outside any transaction."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM senior_states WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return _row_to_state(row)

    def create_state(
        self,
        user_id: int,
        schedules: list[str],
        created_at: datetime,
    ) -> SeniorState:
        """Insert a fresh senior state unless one already exists."""
        def _create(tx: StateTransaction) -> SeniorState:
            existing = tx.get_state(user_id)
            if existing is not None:
                return existing
            tx.insert_state(SeniorState(
                user_id=user_id,
                check_in_schedules=list(schedules),
                senior_created_at=created_at,
                start_date=None,
            ))
            logger.info("Senior state created for user %d", user_id)
            return tx.get_state(user_id)

        return self.run_transaction(_create)

    def get_activity(self, activity_id: str) -> ActivityLog | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM activity_logs WHERE id = ?", (activity_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return _row_to_activity(row)

    def list_activities(
        self, senior_id: int, activity_type: str | None = None,
    ) -> list[ActivityLog]:
        """Return a senior's activity records, oldest first."""
        query = "SELECT * FROM activity_logs WHERE senior_id = ?"
        params: list = [senior_id]
        if activity_type is not None:
            query += " AND activity_type = ?"
            params.append(activity_type)
        query += " ORDER BY timestamp"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_row_to_activity(r) for r in rows]

    def list_check_ins(self, user_id: int) -> list[CheckInRecord]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM check_ins WHERE user_id = ? ORDER BY timestamp",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_check_in(r) for r in rows]

    def existing_activity_ids(self, activity_ids: list[str]) -> set[str]:
        """Batch lookup: which of the given activity ids already exist."""
        found: set[str] = set()
        ids = list(dict.fromkeys(activity_ids))
        conn = self._connect()
        try:
            for start in range(0, len(ids), _IN_CHUNK_SIZE):
                chunk = ids[start:start + _IN_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT id FROM activity_logs WHERE id IN ({placeholders})", chunk,
                ).fetchall()
                found.update(row["id"] for row in rows)
        finally:
            conn.close()
        return found

    # -- Range queries -------------------------------------------------------

    def list_overdue(self, cutoff: datetime) -> list[SeniorState]:
        """Seniors not on vacation whose next deadline is before cutoff."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT * FROM senior_states
                WHERE vacation_mode = 0
                  AND next_expected_check_in IS NOT NULL
                  AND next_expected_check_in < ?
                ORDER BY next_expected_check_in
                """,
                (_dt_to_db(cutoff),),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_state(r) for r in rows]

    def list_unarmed(self) -> list[SeniorState]:
        """Seniors not on vacation with no outstanding deferred task."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM senior_states WHERE vacation_mode = 0 AND active_task_id IS NULL"
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_state(r) for r in rows]

    def list_states(self) -> list[SeniorState]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM senior_states ORDER BY user_id").fetchall()
        finally:
            conn.close()
        return [_row_to_state(r) for r in rows]


# ---------------------------------------------------------------------------
# Users and caregiver connections
# ---------------------------------------------------------------------------


class UserDB:
    """SQLite-backed storage for registered users and caregiver connections."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id       INTEGER PRIMARY KEY,
                    display_name  TEXT NOT NULL,
                    chat_id       INTEGER,
                    timezone      TEXT,
                    created_at    TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS connections (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    senior_id          INTEGER NOT NULL,
                    family_id          INTEGER NOT NULL,
                    status             TEXT    NOT NULL DEFAULT 'pending',
                    relationship_type  TEXT,
                    created_at         TEXT    NOT NULL,
                    UNIQUE (senior_id, family_id)
                )
            """)
        logger.debug("Users tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            user_id=row["user_id"],
            display_name=row["display_name"],
            chat_id=row["chat_id"],
            timezone=row["timezone"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> Connection:
        return Connection(
            id=row["id"],
            senior_id=row["senior_id"],
            family_id=row["family_id"],
            status=row["status"],
            relationship_type=row["relationship_type"],
            created_at=row["created_at"],
        )

    def add_user(
        self,
        user_id: int,
        display_name: str,
        chat_id: int | None = None,
        timezone: str | None = None,
    ) -> UserProfile:
        """Register a new user."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, display_name, chat_id, timezone, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, display_name, chat_id, timezone, now),
            )
        logger.info("User registered: %d '%s'", user_id, display_name)
        return UserProfile(
            user_id=user_id,
            display_name=display_name,
            chat_id=chat_id,
            timezone=timezone,
            created_at=now,
        )

    def get_user(self, user_id: int) -> UserProfile | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_users(self, user_ids: list[int]) -> dict[int, UserProfile]:
        """Batch lookup of profiles by id."""
        ids = list(dict.fromkeys(user_ids))
        result: dict[int, UserProfile] = {}
        with self._connect() as conn:
            for start in range(0, len(ids), _IN_CHUNK_SIZE):
                chunk = ids[start:start + _IN_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT * FROM users WHERE user_id IN ({placeholders})", chunk,
                ).fetchall()
                for row in rows:
                    result[row["user_id"]] = self._row_to_user(row)
        return result

    def get_timezone(self, user_id: int) -> str | None:
        user = self.get_user(user_id)
        return user.timezone if user else None

    def update_user(
        self,
        user_id: int,
        display_name: str | None = None,
        chat_id: int | None = None,
    ) -> None:
        """Refresh display name and chat id of an existing user."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET display_name = COALESCE(?, display_name),
                    chat_id = COALESCE(?, chat_id)
                WHERE user_id = ?
                """,
                (display_name, chat_id, user_id),
            )

    def set_timezone(self, user_id: int, timezone: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET timezone = ? WHERE user_id = ?", (timezone, user_id),
            )
        logger.info("Timezone set for user %d: %s", user_id, timezone)

    def is_registered(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row is not None

    def add_connection(
        self,
        senior_id: int,
        family_id: int,
        status: str = CONNECTION_ACTIVE,
        relationship_type: str | None = None,
    ) -> Connection:
        """Create or reactivate the connection between a senior and a caregiver."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO connections (senior_id, family_id, status, relationship_type, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (senior_id, family_id)
                DO UPDATE SET status = excluded.status,
                              relationship_type = COALESCE(excluded.relationship_type,
                                                           connections.relationship_type)
                """,
                (senior_id, family_id, status, relationship_type, now),
            )
            row = conn.execute(
                "SELECT * FROM connections WHERE senior_id = ? AND family_id = ?",
                (senior_id, family_id),
            ).fetchone()
        logger.info("Connection %d -> %d set to %s", family_id, senior_id, status)
        return self._row_to_connection(row)

    def set_connection_status(self, senior_id: int, family_id: int, status: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE connections SET status = ? WHERE senior_id = ? AND family_id = ?",
                (status, senior_id, family_id),
            )
        return cursor.rowcount > 0

    def list_connections(self, senior_id: int) -> list[Connection]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM connections WHERE senior_id = ? ORDER BY created_at",
                (senior_id,),
            ).fetchall()
        return [self._row_to_connection(r) for r in rows]

    def list_active_caregivers(self, senior_id: int) -> list[int]:
        """User ids of caregivers actively connected to a senior."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT family_id FROM connections WHERE senior_id = ? AND status = ?",
                (senior_id, CONNECTION_ACTIVE),
            ).fetchall()
        return [row["family_id"] for row in rows]

    def list_watched_seniors(self, family_id: int) -> list[int]:
        """User ids of seniors a caregiver is actively connected to."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT senior_id FROM connections WHERE family_id = ? AND status = ?",
                (family_id, CONNECTION_ACTIVE),
            ).fetchall()
        return [row["senior_id"] for row in rows]
