"""Test doubles and time helpers shared by the test modules."""

from datetime import datetime, timedelta, timezone

KARACHI = "Asia/Karachi"  # UTC+5, no DST

# Monday 2 March 2026, 08:00 in Karachi
START = datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)


def karachi(day: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant of a March 2026 wall-clock time in Karachi."""
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc) - timedelta(hours=5)


class FixedClock:
    """Clock pinned to a settable instant."""

    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


class FakeDispatcher:
    """In-memory TaskDispatcherPort that records armed tasks."""

    def __init__(self) -> None:
        self.tasks: dict[str, tuple[datetime, dict]] = {}
        self.created: list[str] = []
        self.cancelled: list[str] = []
        self.create_errors: list[Exception] = []
        self._counter = 0

    async def create(self, target_time: datetime, payload: dict) -> str:
        if self.create_errors:
            raise self.create_errors.pop(0)
        self._counter += 1
        handle = f"task-{self._counter}"
        self.tasks[handle] = (target_time, dict(payload))
        self.created.append(handle)
        return handle

    async def cancel(self, handle: str) -> bool:
        self.cancelled.append(handle)
        return self.tasks.pop(handle, None) is not None

    def target_of(self, handle: str) -> datetime:
        return self.tasks[handle][0]

    def payload_for(self, handle: str) -> dict:
        return self.tasks[handle][1]


class FakeNotifier:
    """NotificationPort that records messages; chats in failing raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []
        self.failing: set[int] = set()

    async def send_message(self, chat_id: int, text: str) -> None:
        if chat_id in self.failing:
            raise RuntimeError(f"chat {chat_id} unreachable")
        self.sent.append((chat_id, text))

    def texts_to(self, chat_id: int) -> list[str]:
        return [text for cid, text in self.sent if cid == chat_id]
