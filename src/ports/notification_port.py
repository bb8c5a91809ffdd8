"""Notification port — outbound alert delivery.

Alert dispatch depends on this protocol, never on a specific messenger.
Implementations raise on delivery failure; AlertDispatcher isolates those
errors per recipient.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Sends a plain-text message to one chat."""

    async def send_message(self, chat_id: int, text: str) -> None:
        """Deliver text to chat_id. Raises if the messenger rejects it."""
        ...
