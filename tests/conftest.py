"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures: temp DBs, a pinned clock, and in-memory
fakes for the task dispatcher and the notifier.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("DEFAULT_TIMEZONE", "Asia/Karachi")

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tests.helpers import KARACHI, START, FakeDispatcher, FakeNotifier, FixedClock


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_safecheck.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a SeniorStateDB instance backed by a temp file."""
    from src.data.db import SeniorStateDB
    return SeniorStateDB(db_path=tmp_db_path, timeout_seconds=1.0)


@pytest.fixture
def user_db(tmp_db_path):
    """Return a UserDB instance sharing the temp file with the store."""
    from src.data.db import UserDB
    return UserDB(db_path=tmp_db_path)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator(store, dispatcher, user_db, clock, sleep):
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    return CheckInTaskOrchestrator(
        store, dispatcher, user_db, clock,
        grace_minutes=0,
        max_attempts=3,
        retry_base_seconds=1.0,
        default_timezone=KARACHI,
        default_schedules=["11:00 AM"],
        sleep=sleep,
    )


@pytest.fixture
def alerts(notifier, user_db):
    from src.core.alert_dispatch import AlertDispatcher
    return AlertDispatcher(notifier, user_db)


@pytest.fixture
def make_senior(store, user_db, clock):
    """Create a senior profile and state; returns the stored state.

    Defaults: schedules 9:00 AM and 6:00 PM in Karachi, registered a month ago.
    """
    def _make(
        user_id=100,
        schedules=None,
        created_at=None,
        timezone_name=KARACHI,
        display_name="Nana",
        **fields,
    ):
        user_db.add_user(user_id, display_name, chat_id=user_id, timezone=timezone_name)
        store.create_state(
            user_id,
            ["9:00 AM", "6:00 PM"] if schedules is None else schedules,
            created_at=created_at or clock.now() - timedelta(days=30),
        )
        if fields:
            store.run_transaction(lambda tx: tx.update_state(user_id, **fields))
        return store.get_state(user_id)

    return _make
