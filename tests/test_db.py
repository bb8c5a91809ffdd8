"""Tests for src.data.db — SeniorStateDB (transactional SQLite storage)."""

import sqlite3
from datetime import date, timedelta

import pytest

from src.data.db import SeniorStateDB
from src.data.models import ActivityLog, CheckInRecord
from tests.helpers import karachi


class TestCreateAndGet:
    def test_create_state(self, store):
        state = store.create_state(1, ["9:00 AM"], created_at=karachi(2, 8))
        assert state.user_id == 1
        assert state.check_in_schedules == ["9:00 AM"]
        assert state.senior_created_at == karachi(2, 8)
        assert state.vacation_mode is False
        assert state.version == 0

    def test_create_is_idempotent(self, store):
        store.create_state(1, ["9:00 AM"], created_at=karachi(2, 8))
        again = store.create_state(1, ["6:00 PM"], created_at=karachi(3, 8))
        assert again.check_in_schedules == ["9:00 AM"]

    def test_get_missing_returns_none(self, store):
        assert store.get_state(404) is None

    def test_default_path_comes_from_settings(self, tmp_path, monkeypatch):
        from src.config import settings
        monkeypatch.setattr(settings, "DATABASE_PATH", str(tmp_path / "nested" / "db.sqlite"))
        db = SeniorStateDB()
        db.create_state(1, [], created_at=karachi(2, 8))
        assert (tmp_path / "nested" / "db.sqlite").exists()

    def test_older_database_gains_schedules_updated_at(self, tmp_db_path):
        conn = sqlite3.connect(tmp_db_path)
        conn.execute("""
            CREATE TABLE senior_states (
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
                version                          INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("INSERT INTO senior_states (user_id) VALUES (1)")
        conn.commit()
        conn.close()

        db = SeniorStateDB(db_path=tmp_db_path)
        assert db.get_state(1).schedules_updated_at is None
        db.run_transaction(lambda tx: tx.update_state(1, schedules_updated_at=karachi(2, 9)))
        assert db.get_state(1).schedules_updated_at == karachi(2, 9)


class TestTransactions:
    def test_update_round_trips_every_type(self, store):
        store.create_state(1, [], created_at=karachi(2, 8))

        def _update(tx):
            tx.update_state(
                1,
                check_in_schedules=["9:00 AM", "6:00 PM"],
                last_check_in=karachi(2, 9, 1),
                next_expected_check_in=karachi(2, 18),
                vacation_mode=True,
                active_task_id="task-1",
                completed_schedules_today=["9:00 AM"],
                last_schedule_reset_date=date(2026, 3, 2),
                current_streak=3,
                schedules_updated_at=karachi(2, 8, 15),
            )

        store.run_transaction(_update)
        state = store.get_state(1)
        assert state.check_in_schedules == ["9:00 AM", "6:00 PM"]
        assert state.last_check_in == karachi(2, 9, 1)
        assert state.next_expected_check_in == karachi(2, 18)
        assert state.vacation_mode is True
        assert state.active_task_id == "task-1"
        assert state.completed_schedules_today == ["9:00 AM"]
        assert state.last_schedule_reset_date == date(2026, 3, 2)
        assert state.current_streak == 3
        assert state.schedules_updated_at == karachi(2, 8, 15)

    def test_update_bumps_version(self, store):
        store.create_state(1, [], created_at=karachi(2, 8))
        store.run_transaction(lambda tx: tx.update_state(1, current_streak=1))
        store.run_transaction(lambda tx: tx.update_state(1, current_streak=2))
        assert store.get_state(1).version == 2

    def test_update_rejects_unknown_fields(self, store):
        store.create_state(1, [], created_at=karachi(2, 8))
        with pytest.raises(ValueError):
            store.run_transaction(lambda tx: tx.update_state(1, version=99))

    def test_error_rolls_back_everything(self, store):
        store.create_state(1, [], created_at=karachi(2, 8))

        def _fail(tx):
            tx.update_state(1, current_streak=9)
            tx.add_activity(ActivityLog("a1", 1, "check_in", karachi(2, 9)))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_transaction(_fail)
        assert store.get_state(1).current_streak == 0
        assert store.get_activity("a1") is None

    def test_clearing_a_field(self, store):
        store.create_state(1, [], created_at=karachi(2, 8))
        store.run_transaction(lambda tx: tx.update_state(1, active_task_id="t"))
        store.run_transaction(lambda tx: tx.update_state(1, active_task_id=None))
        assert store.get_state(1).active_task_id is None

    def test_lock_contention_is_retried(self, store, monkeypatch):
        monkeypatch.setattr("src.data.db._time.sleep", lambda s: None)
        calls = []

        def _flaky(tx):
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert store.run_transaction(_flaky) == "ok"
        assert len(calls) == 3

    def test_lock_contention_gives_up(self, store, monkeypatch):
        monkeypatch.setattr("src.data.db._time.sleep", lambda s: None)

        def _locked(tx):
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            store.run_transaction(_locked)

    def test_other_operational_errors_are_not_retried(self, store):
        calls = []

        def _broken(tx):
            calls.append(1)
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError):
            store.run_transaction(_broken)
        assert len(calls) == 1


class TestActivities:
    def test_duplicate_id_is_a_no_op(self, store):
        first = ActivityLog("missed_1_900AM_2026-03-02", 1, "missed_check_in", karachi(2, 9),
                            is_alert=True, metadata={"n": 1})
        second = ActivityLog("missed_1_900AM_2026-03-02", 1, "missed_check_in", karachi(2, 10),
                             is_alert=True, metadata={"n": 2})
        assert store.run_transaction(lambda tx: tx.add_activity(first)) is True
        assert store.run_transaction(lambda tx: tx.add_activity(second)) is False
        stored = store.get_activity("missed_1_900AM_2026-03-02")
        assert stored.metadata == {"n": 1}
        assert stored.is_alert is True

    def test_activity_exists(self, store):
        store.run_transaction(lambda tx: tx.add_activity(
            ActivityLog("a1", 1, "check_in", karachi(2, 9))
        ))
        assert store.run_transaction(lambda tx: tx.activity_exists("a1")) is True
        assert store.run_transaction(lambda tx: tx.activity_exists("a2")) is False

    def test_existing_activity_ids_batches(self, store):
        for i in range(5):
            store.run_transaction(lambda tx, i=i: tx.add_activity(
                ActivityLog(f"a{i}", 1, "check_in", karachi(2, 9))
            ))
        wanted = [f"a{i}" for i in range(0, 1200, 2)]
        assert store.existing_activity_ids(wanted) == {"a0", "a2", "a4"}

    def test_existing_activity_ids_empty(self, store):
        assert store.existing_activity_ids([]) == set()

    def test_list_activities_filters_by_type(self, store):
        store.run_transaction(lambda tx: tx.add_activity(
            ActivityLog("c1", 1, "check_in", karachi(2, 9))
        ))
        store.run_transaction(lambda tx: tx.add_activity(
            ActivityLog("m1", 1, "missed_check_in", karachi(2, 18), is_alert=True)
        ))
        assert [a.id for a in store.list_activities(1)] == ["c1", "m1"]
        assert [a.id for a in store.list_activities(1, "missed_check_in")] == ["m1"]


class TestCheckIns:
    def test_add_and_list(self, store):
        record = CheckInRecord(
            user_id=1, timestamp=karachi(2, 9), scheduled_for=["9:00 AM"],
            scheduled_count=1, mood="good",
        )
        record_id = store.run_transaction(lambda tx: tx.add_check_in(record))
        stored = store.list_check_ins(1)
        assert len(stored) == 1
        assert stored[0].id == record_id
        assert stored[0].scheduled_for == ["9:00 AM"]
        assert stored[0].mood == "good"


class TestRangeQueries:
    def _seed(self, store, user_id, deadline, vacation=False, task=None):
        store.create_state(user_id, ["9:00 AM"], created_at=karachi(1, 8))
        store.run_transaction(lambda tx: tx.update_state(
            user_id, next_expected_check_in=deadline, vacation_mode=vacation,
            active_task_id=task,
        ))

    def test_list_overdue(self, store):
        self._seed(store, 1, karachi(2, 9))
        self._seed(store, 2, karachi(2, 9), vacation=True)
        self._seed(store, 3, karachi(2, 18))
        self._seed(store, 4, None)
        overdue = store.list_overdue(karachi(2, 10))
        assert [s.user_id for s in overdue] == [1]

    def test_list_overdue_is_strict(self, store):
        self._seed(store, 1, karachi(2, 9))
        assert store.list_overdue(karachi(2, 9)) == []
        assert len(store.list_overdue(karachi(2, 9) + timedelta(microseconds=1))) == 1

    def test_list_unarmed(self, store):
        self._seed(store, 1, karachi(2, 9), task="task-1")
        self._seed(store, 2, karachi(2, 9))
        self._seed(store, 3, None, vacation=True)
        assert [s.user_id for s in store.list_unarmed()] == [2]

    def test_list_states(self, store):
        self._seed(store, 2, None)
        self._seed(store, 1, None)
        assert [s.user_id for s in store.list_states()] == [1, 2]
