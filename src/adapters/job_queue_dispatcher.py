"""JobQueue task dispatcher — implements TaskDispatcherPort.

Deferred check-in deadlines run as one-shot jobs on python-telegram-bot's
JobQueue. The job name is the task handle, so a task can be cancelled by
handle alone. When a job fires, the missed check-in detector stored in
bot_data["detector"] handles the payload.

Jobs live in memory: after a restart the bot re-arms every senior.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from telegram.ext import ContextTypes, JobQueue

from src.ports.task_port import PermanentTaskError, TransientTaskError

logger = logging.getLogger(__name__)


async def _fire_check_in_task(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Job callback: hand the payload to the missed check-in detector."""
    detector = context.bot_data.get("detector")
    if detector is None:
        logger.error("Check-in task %s fired but no detector is configured", context.job.name)
        return

    response = await detector.handle_task({**context.job.data, "task_id": context.job.name})
    if response.status_code != 200:
        logger.error(
            "Check-in task %s failed with %d: %s",
            context.job.name, response.status_code, response.body,
        )


class JobQueueTaskDispatcher:
    """python-telegram-bot JobQueue implementation of TaskDispatcherPort."""

    def __init__(self, job_queue: JobQueue) -> None:
        self._job_queue = job_queue

    async def create(self, target_time: datetime, payload: dict) -> str:
        handle = f"checkin_{payload.get('user_id', 'unknown')}_{uuid.uuid4().hex[:12]}"
        try:
            self._job_queue.run_once(
                _fire_check_in_task,
                when=target_time,
                data=dict(payload),
                name=handle,
            )
        except (TypeError, ValueError) as exc:
            raise PermanentTaskError(f"Invalid check-in task: {exc}") from exc
        except Exception as exc:
            raise TransientTaskError(f"Job queue unavailable: {exc}") from exc

        logger.debug("Check-in task %s armed for %s", handle, target_time.isoformat())
        return handle

    async def cancel(self, handle: str) -> bool:
        """Remove the job named handle. Returns False if no such job exists."""
        jobs = self._job_queue.get_jobs_by_name(handle)
        if not jobs:
            logger.debug("Check-in task %s not found (already fired or gone)", handle)
            return False
        for job in jobs:
            job.schedule_removal()
        logger.debug("Check-in task %s cancelled", handle)
        return True
