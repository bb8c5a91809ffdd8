"""Tests for src.core.streak — check-in streak state machine."""

from zoneinfo import ZoneInfo

from src.core.streak import StreakState, classify_streak, compute_streak
from tests.helpers import KARACHI, karachi

TZ = ZoneInfo(KARACHI)


class TestClassifyStreak:
    def test_same_day(self):
        assert classify_streak(karachi(2, 9), karachi(2, 21), TZ) is StreakState.SAME_DAY

    def test_consecutive(self):
        assert classify_streak(karachi(2, 23), karachi(3, 0, 30), TZ) is StreakState.CONSECUTIVE

    def test_broken(self):
        assert classify_streak(karachi(2, 9), karachi(5, 9), TZ) is StreakState.BROKEN

    def test_clock_skew_counts_as_same_day(self):
        assert classify_streak(karachi(3, 9), karachi(2, 9), TZ) is StreakState.SAME_DAY

    def test_uses_local_calendar_days(self):
        # 04:00 and 23:30 in Karachi fall on different UTC dates
        assert classify_streak(karachi(2, 4), karachi(2, 23, 30), TZ) is StreakState.SAME_DAY


class TestComputeStreak:
    def test_same_day_keeps_streak(self):
        update = compute_streak(4, karachi(1, 9), karachi(9, 9), karachi(9, 18), TZ)
        assert update.streak == 4
        assert update.start_date == karachi(1, 9)
        assert update.state is StreakState.SAME_DAY

    def test_same_day_floors_at_one(self):
        update = compute_streak(0, None, karachi(2, 9), karachi(2, 18), TZ)
        assert update.streak == 1

    def test_next_day_increments(self):
        update = compute_streak(4, karachi(1, 9), karachi(4, 9), karachi(5, 9), TZ)
        assert update.streak == 5
        assert update.start_date == karachi(1, 9)
        assert update.state is StreakState.CONSECUTIVE

    def test_gap_resets(self):
        update = compute_streak(4, karachi(1, 9), karachi(4, 9), karachi(7, 10), TZ)
        assert update.streak == 1
        assert update.start_date == karachi(7, 10)
        assert update.state is StreakState.BROKEN

    def test_first_check_in_starts_streak(self):
        update = compute_streak(0, None, None, karachi(2, 9), TZ)
        assert update.streak == 1
        assert update.start_date == karachi(2, 9)
        assert update.state is None

    def test_first_check_in_keeps_stored_start_date(self):
        update = compute_streak(0, karachi(1, 9), None, karachi(2, 9), TZ)
        assert update.start_date == karachi(1, 9)

    def test_streak_without_last_check_in_is_reset(self):
        update = compute_streak(6, karachi(1, 9), None, karachi(2, 9), TZ)
        assert update.streak == 1
        assert update.start_date == karachi(2, 9)
        assert update.state is StreakState.BROKEN

    def test_negative_stored_streak_is_treated_as_zero(self):
        update = compute_streak(-3, None, karachi(1, 9), karachi(2, 9), TZ)
        assert update.streak == 1
