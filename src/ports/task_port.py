"""Task dispatcher port — abstract interface for deferred one-shot tasks.

Core modules depend on this protocol, never on a specific scheduler. A task
is created for a target instant with a JSON-like payload and can be
cancelled by the opaque handle returned on creation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TaskDispatcherError(Exception):
    """Raised when a deferred task cannot be created or cancelled."""


class TransientTaskError(TaskDispatcherError):
    """Temporary failure (unavailable, deadline exceeded, network); retryable."""


class PermanentTaskError(TaskDispatcherError):
    """Failure that a retry cannot fix (bad payload, invalid target)."""


class TaskDispatcherPort(Protocol):
    """Abstract deferred-task interface used by core modules."""

    async def create(self, target_time: datetime, payload: dict) -> str: ...

    async def cancel(self, handle: str) -> bool: ...
