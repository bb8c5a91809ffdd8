"""
SafeCheck Monitor — Alert dispatch.

Fans out missed check-in and escalation messages to the senior and every
actively connected caregiver. Delivery is best-effort: a failing recipient
is logged and never blocks the others or the caller.

This module is provider-agnostic: it depends on the NotificationPort
protocol, not on a specific messenger.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from src.config import settings
from src.core.deadline_calculator import resolve_timezone, schedule_label_for

if TYPE_CHECKING:
    from src.data.db import UserDB
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class AlertDispatcher:
    """Sends alert messages through a NotificationPort."""

    def __init__(self, notifier: NotificationPort, user_db: UserDB) -> None:
        self._notifier = notifier
        self._users = user_db

    async def send_to_user(self, user_id: int, text: str) -> bool:
        """Send one message. Returns False (after logging) on any failure."""
        profile = self._users.get_user(user_id)
        chat_id = profile.chat_id if profile and profile.chat_id else user_id
        try:
            await self._notifier.send_message(chat_id, text)
        except Exception as exc:
            logger.warning("Notification to user %d failed: %s", user_id, exc)
            return False
        return True

    async def send_to_many(self, user_ids: list[int], text: str) -> int:
        """Send the same message to every recipient in parallel. Returns the delivered count."""
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            return 0
        profiles = self._users.get_users(recipients)

        async def _send(user_id: int) -> None:
            profile = profiles.get(user_id)
            chat_id = profile.chat_id if profile and profile.chat_id else user_id
            await self._notifier.send_message(chat_id, text)

        results = await asyncio.gather(
            *(_send(uid) for uid in recipients), return_exceptions=True,
        )
        delivered = 0
        for user_id, result in zip(recipients, results):
            if isinstance(result, BaseException):
                logger.warning("Notification to user %d failed: %s", user_id, result)
            else:
                delivered += 1
        return delivered

    async def notify_missed_check_in(
        self,
        senior_id: int,
        scheduled_time: datetime,
        timezone_name: str | None = None,
    ) -> int:
        """Tell the senior and their caregivers that a check-in was missed."""
        senior_name = self._display_name(senior_id)
        tz = resolve_timezone(timezone_name, settings.DEFAULT_TIMEZONE)
        label = schedule_label_for(scheduled_time, tz)
        delivered = 0
        if await self.send_to_user(
            senior_id,
            f"You missed your {label} check-in. Please send /checkin to let "
            "your family know you're okay.",
        ):
            delivered += 1
        delivered += await self.send_to_many(
            self._users.list_active_caregivers(senior_id),
            f"⚠️ {senior_name} missed their {label} check-in.",
        )
        logger.info("Missed check-in alert for user %d delivered to %d recipient(s)",
                    senior_id, delivered)
        return delivered

    async def notify_escalation(self, senior_id: int, consecutive_missed_days: int) -> int:
        """Urgent alert to caregivers after repeated misses."""
        senior_name = self._display_name(senior_id)
        delivered = await self.send_to_many(
            self._users.list_active_caregivers(senior_id),
            f"🚨 {senior_name} has missed check-ins {consecutive_missed_days} times "
            "in a row. Please contact them as soon as possible.",
        )
        logger.warning("Escalation for user %d delivered to %d caregiver(s)",
                       senior_id, delivered)
        return delivered

    def _display_name(self, user_id: int) -> str:
        profile = self._users.get_user(user_id)
        return profile.display_name if profile else f"User {user_id}"
