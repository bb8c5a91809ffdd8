"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Tests the command handlers and authorization.
All services in bot_data are mocked.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from src.bot.telegram_bot import (
    _format_local,
    _format_schedules,
    cmd_addtime,
    cmd_checkin,
    cmd_help,
    cmd_removetime,
    cmd_schedules,
    cmd_start,
    cmd_status,
    cmd_unwatch,
    cmd_vacation,
    cmd_watch,
)
from src.core.check_in_reconciler import CheckInResult
from src.core.schedule_parser import ScheduleParseError
from src.core.task_orchestrator import SeniorNotFoundError
from src.data.models import SeniorState, UserProfile
from tests.helpers import karachi


def _make_update(user_id=12345, full_name="Amit"):
    """Create a mock Update with a message from an authorized user."""
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.full_name = full_name
    update.effective_chat.id = user_id
    update.message.reply_text = AsyncMock()
    return update


def _make_context(args=None, **services):
    """Create a mock context whose bot_data holds mocked services."""
    context = MagicMock()
    context.args = args or []
    context.bot_data = {
        "schedule_service": MagicMock(),
        "reconciler": MagicMock(),
        "store": MagicMock(),
        "user_db": MagicMock(),
    }
    context.bot_data.update(services)
    return context


def _reply(update) -> str:
    return update.message.reply_text.call_args[0][0]


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_format_schedules(self):
        assert _format_schedules(["9:00 AM", "6:00 PM"]) == "9:00 AM, 6:00 PM"
        assert _format_schedules([]) == "none"

    def test_format_local(self):
        assert _format_local(karachi(3, 9), "Asia/Karachi") == "Tue 03 Mar, 09:00"
        assert _format_local(None, "Asia/Karachi") == "not set"


# ---------------------------------------------------------------------------
# Registration and check-in
# ---------------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_registers_sender(self):
        service = MagicMock()
        service.register_senior = AsyncMock(
            return_value=SeniorState(user_id=12345, check_in_schedules=["11:00 AM"]),
        )
        update = _make_update()
        await cmd_start(update, _make_context(schedule_service=service))

        service.register_senior.assert_awaited_once_with(12345, "Amit", chat_id=12345)
        assert "11:00 AM" in _reply(update)
        assert "/watch 12345" in _reply(update)

    @pytest.mark.asyncio
    async def test_registration_failure(self):
        service = MagicMock()
        service.register_senior = AsyncMock(side_effect=RuntimeError("db locked"))
        update = _make_update()
        await cmd_start(update, _make_context(schedule_service=service))
        assert "Couldn't register" in _reply(update)


class TestCheckin:
    @pytest.mark.asyncio
    async def test_reports_streak_and_next_deadline(self):
        reconciler = MagicMock()
        reconciler.record_check_in = AsyncMock(return_value=CheckInResult(
            user_id=12345,
            timestamp=karachi(2, 18, 5),
            check_in_id=1,
            streak=3,
            streak_state=None,
            satisfied=["9:00 AM", "6:00 PM"],
            next_expected_check_in=karachi(3, 9),
        ))
        user_db = MagicMock()
        user_db.get_timezone.return_value = "Asia/Karachi"
        update = _make_update()
        await cmd_checkin(update, _make_context(reconciler=reconciler, user_db=user_db))

        reconciler.record_check_in.assert_awaited_once_with(12345)
        text = _reply(update)
        assert "9:00 AM, 6:00 PM" in text
        assert "Streak: 3 day(s)" in text
        assert "Tue 03 Mar, 09:00" in text

    @pytest.mark.asyncio
    async def test_failure_is_reported(self):
        reconciler = MagicMock()
        reconciler.record_check_in = AsyncMock(side_effect=RuntimeError("db locked"))
        update = _make_update()
        await cmd_checkin(update, _make_context(reconciler=reconciler))
        assert "Couldn't record" in _reply(update)


# ---------------------------------------------------------------------------
# Schedules and vacation
# ---------------------------------------------------------------------------


class TestSchedules:
    @pytest.mark.asyncio
    async def test_lists_schedules(self):
        service = MagicMock()
        service.get_schedules.return_value = ["9:00 AM", "6:00 PM"]
        update = _make_update()
        await cmd_schedules(update, _make_context(schedule_service=service))
        assert "• 9:00 AM\n• 6:00 PM" in _reply(update)

    @pytest.mark.asyncio
    async def test_not_registered(self):
        service = MagicMock()
        service.get_schedules.side_effect = SeniorNotFoundError("nope")
        update = _make_update()
        await cmd_schedules(update, _make_context(schedule_service=service))
        assert "/start" in _reply(update)

    @pytest.mark.asyncio
    async def test_addtime_joins_arguments(self):
        service = MagicMock()
        service.add_schedule = AsyncMock(return_value=["9:00 AM", "6:00 PM"])
        update = _make_update()
        await cmd_addtime(update, _make_context(["9:00", "AM"], schedule_service=service))

        service.add_schedule.assert_awaited_once_with(12345, "9:00 AM")
        assert _reply(update) == "✅ Check-in times: 9:00 AM, 6:00 PM"

    @pytest.mark.asyncio
    async def test_addtime_without_arguments(self):
        update = _make_update()
        await cmd_addtime(update, _make_context())
        assert "Usage" in _reply(update)

    @pytest.mark.asyncio
    async def test_addtime_invalid_time(self):
        service = MagicMock()
        service.add_schedule = AsyncMock(side_effect=ScheduleParseError("bad"))
        update = _make_update()
        await cmd_addtime(update, _make_context(["25:00"], schedule_service=service))
        assert "isn't a time I understand" in _reply(update)

    @pytest.mark.asyncio
    async def test_removetime_not_registered(self):
        service = MagicMock()
        service.remove_schedule = AsyncMock(side_effect=SeniorNotFoundError("nope"))
        update = _make_update()
        await cmd_removetime(update, _make_context(["9:00", "AM"], schedule_service=service))
        assert "/start" in _reply(update)

    @pytest.mark.asyncio
    async def test_vacation_on(self):
        service = MagicMock()
        service.set_vacation_mode = AsyncMock()
        update = _make_update()
        await cmd_vacation(update, _make_context(["ON"], schedule_service=service))

        service.set_vacation_mode.assert_awaited_once_with(12345, True)
        assert "Vacation mode on" in _reply(update)

    @pytest.mark.asyncio
    async def test_vacation_off(self):
        service = MagicMock()
        service.set_vacation_mode = AsyncMock()
        update = _make_update()
        await cmd_vacation(update, _make_context(["off"], schedule_service=service))
        service.set_vacation_mode.assert_awaited_once_with(12345, False)

    @pytest.mark.asyncio
    async def test_vacation_bad_argument(self):
        update = _make_update()
        await cmd_vacation(update, _make_context(["maybe"]))
        assert "Usage" in _reply(update)


class TestStatus:
    @pytest.mark.asyncio
    async def test_shows_state(self):
        store = MagicMock()
        store.get_state.return_value = SeniorState(
            user_id=12345,
            current_streak=5,
            consecutive_missed_days=1,
            next_expected_check_in=karachi(3, 9),
        )
        user_db = MagicMock()
        user_db.get_timezone.return_value = "Asia/Karachi"
        update = _make_update()
        await cmd_status(update, _make_context(store=store, user_db=user_db))

        text = _reply(update)
        assert "Streak: 5 day(s)" in text
        assert "Missed in a row: 1" in text
        assert "Next check-in due: Tue 03 Mar, 09:00" in text
        assert "Vacation mode: off" in text

    @pytest.mark.asyncio
    async def test_not_registered(self):
        store = MagicMock()
        store.get_state.return_value = None
        update = _make_update()
        await cmd_status(update, _make_context(store=store))
        assert "/start" in _reply(update)


# ---------------------------------------------------------------------------
# Caregivers
# ---------------------------------------------------------------------------


class TestWatch:
    @pytest.mark.asyncio
    async def test_connects_and_registers_caregiver(self):
        service = MagicMock()
        user_db = MagicMock()
        user_db.is_registered.return_value = False
        user_db.get_user.return_value = UserProfile(user_id=100, display_name="Nana")
        update = _make_update()
        await cmd_watch(update, _make_context(["100"], schedule_service=service, user_db=user_db))

        user_db.add_user.assert_called_once_with(12345, "Amit", chat_id=12345)
        service.connect_caregiver.assert_called_once_with(100, 12345)
        assert "Nana" in _reply(update)

    @pytest.mark.asyncio
    async def test_unknown_senior(self):
        service = MagicMock()
        service.connect_caregiver.side_effect = SeniorNotFoundError("nope")
        update = _make_update()
        await cmd_watch(update, _make_context(["404"], schedule_service=service))
        assert "No senior with ID 404" in _reply(update)

    @pytest.mark.asyncio
    async def test_self_watch_rejected(self):
        service = MagicMock()
        service.connect_caregiver.side_effect = ValueError("A senior cannot watch themselves")
        update = _make_update()
        await cmd_watch(update, _make_context(["12345"], schedule_service=service))
        assert _reply(update) == "A senior cannot watch themselves"

    @pytest.mark.asyncio
    async def test_bad_argument(self):
        update = _make_update()
        await cmd_watch(update, _make_context(["nana"]))
        assert "Usage" in _reply(update)

    @pytest.mark.asyncio
    async def test_unwatch(self):
        service = MagicMock()
        service.disconnect_caregiver.return_value = True
        update = _make_update()
        await cmd_unwatch(update, _make_context(["100"], schedule_service=service))

        service.disconnect_caregiver.assert_called_once_with(100, 12345)
        assert "no longer receive alerts" in _reply(update)

    @pytest.mark.asyncio
    async def test_unwatch_without_connection(self):
        service = MagicMock()
        service.disconnect_caregiver.return_value = False
        update = _make_update()
        await cmd_unwatch(update, _make_context(["100"], schedule_service=service))
        assert "weren't watching" in _reply(update)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self):
        update = _make_update(user_id=99999)  # not in ALLOWED_USER_IDS
        await cmd_help(update, _make_context())
        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_authorized_user_gets_response(self):
        update = _make_update(user_id=12345)  # matches ALLOWED_USER_IDS in conftest
        await cmd_help(update, _make_context())
        update.message.reply_text.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_allow_list_admits_everyone(self):
        update = _make_update(user_id=99999)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = []
            await cmd_help(update, _make_context())
        update.message.reply_text.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_user_is_ignored(self):
        update = _make_update()
        update.effective_user = None
        await cmd_help(update, _make_context())
        update.message.reply_text.assert_not_called()
