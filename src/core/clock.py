"""Clock abstraction — the single source of "now" for time-dependent logic.

Core components receive a Clock instead of calling datetime.now() so tests
can pin the current instant.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Returns the current instant as a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock implementation of Clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
