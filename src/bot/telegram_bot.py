"""
SafeCheck Monitor — Telegram Bot.

Telegram is the only user interface. Seniors register, check in and manage
their daily check-in times here; caregivers connect to a senior and receive
missed check-in alerts here.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
)

from src.config import settings
from src.core.deadline_calculator import resolve_timezone
from src.core.schedule_parser import ScheduleParseError
from src.core.task_orchestrator import SeniorNotFoundError

if TYPE_CHECKING:
    from src.core.check_in_reconciler import CheckInReconciler
    from src.core.schedule_service import ScheduleService
    from src.data.db import SeniorStateDB, UserDB
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_NOT_REGISTERED = "You're not registered yet. Send /start first."


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    An empty ALLOWED_USER_IDS admits everyone.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        allowed = settings.ALLOWED_USER_IDS
        if user is None or (allowed and user.id not in allowed):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_schedules(schedules: list[str]) -> str:
    return ", ".join(schedules) if schedules else "none"


def _format_local(instant, timezone_name: str | None) -> str:
    if instant is None:
        return "not set"
    tz = resolve_timezone(timezone_name, settings.DEFAULT_TIMEZONE)
    return instant.astimezone(tz).strftime("%a %d %b, %H:%M")


def _parse_user_id_arg(context: ContextTypes.DEFAULT_TYPE) -> int | None:
    if not context.args:
        return None
    try:
        return int(context.args[0])
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — register the sender as a senior."""
    service: ScheduleService = context.bot_data["schedule_service"]
    user = update.effective_user

    try:
        state = await service.register_senior(
            user.id,
            user.full_name or str(user.id),
            chat_id=update.effective_chat.id,
        )
    except Exception as exc:
        logger.error("/start error for user %d: %s", user.id, exc)
        await update.message.reply_text("Couldn't register you. Please try again.")
        return

    await update.message.reply_text(
        "Welcome to *SafeCheck*!\n\n"
        "Check in every day by your chosen times so your family knows you're okay.\n"
        f"Your check-in times: {_format_schedules(state.check_in_schedules)}\n\n"
        "• /checkin — check in now\n"
        "• /addtime 9:00 AM — add a daily check-in time\n"
        "• /status — see your streak and next deadline\n\n"
        f"Family members can watch you with: /watch {user.id}\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/start — Register as a senior\n"
        "/checkin — Check in now\n"
        "/schedules — List your daily check-in times\n"
        "/addtime <H:MM AM/PM> — Add a check-in time\n"
        "/removetime <H:MM AM/PM> — Remove a check-in time\n"
        "/vacation on|off — Pause or resume monitoring\n"
        "/status — Streak, missed check-ins and next deadline\n"
        "/watch <user_id> — Receive alerts for a senior\n"
        "/unwatch <user_id> — Stop receiving alerts for a senior\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_checkin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /checkin — record a check-in."""
    reconciler: CheckInReconciler = context.bot_data["reconciler"]
    user_db: UserDB = context.bot_data["user_db"]
    user_id = update.effective_user.id

    try:
        result = await reconciler.record_check_in(user_id)
    except Exception as exc:
        logger.error("/checkin error for user %d: %s", user_id, exc)
        await update.message.reply_text("Couldn't record your check-in. Please try again.")
        return

    satisfied = _format_schedules(result.satisfied)
    next_due = _format_local(result.next_expected_check_in, user_db.get_timezone(user_id))
    await update.message.reply_text(
        f"✅ Checked in ({satisfied}).\n"
        f"Streak: {result.streak} day(s)\n"
        f"Next check-in due: {next_due}"
    )


@authorized_only
async def cmd_schedules(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /schedules — list the daily check-in times."""
    service: ScheduleService = context.bot_data["schedule_service"]

    try:
        schedules = service.get_schedules(update.effective_user.id)
    except SeniorNotFoundError:
        await update.message.reply_text(_NOT_REGISTERED)
        return

    lines = ["*Daily check-in times:*\n"]
    lines.extend(f"• {s}" for s in schedules)
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_addtime(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addtime <time> — add a daily check-in time."""
    service: ScheduleService = context.bot_data["schedule_service"]

    raw = " ".join(context.args or [])
    if not raw:
        await update.message.reply_text("Usage: /addtime 9:00 AM")
        return

    try:
        schedules = await service.add_schedule(update.effective_user.id, raw)
    except ScheduleParseError:
        await update.message.reply_text(
            f"'{raw}' isn't a time I understand. Use a format like 9:00 AM or 6:30 PM."
        )
        return
    except SeniorNotFoundError:
        await update.message.reply_text(_NOT_REGISTERED)
        return
    except Exception as exc:
        logger.error("/addtime error: %s", exc)
        await update.message.reply_text("Couldn't add the check-in time. Please try again.")
        return

    await update.message.reply_text(f"✅ Check-in times: {_format_schedules(schedules)}")


@authorized_only
async def cmd_removetime(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /removetime <time> — remove a daily check-in time."""
    service: ScheduleService = context.bot_data["schedule_service"]

    raw = " ".join(context.args or [])
    if not raw:
        await update.message.reply_text("Usage: /removetime 9:00 AM")
        return

    try:
        schedules = await service.remove_schedule(update.effective_user.id, raw)
    except ScheduleParseError:
        await update.message.reply_text(
            f"'{raw}' isn't a time I understand. Use a format like 9:00 AM or 6:30 PM."
        )
        return
    except SeniorNotFoundError:
        await update.message.reply_text(_NOT_REGISTERED)
        return
    except Exception as exc:
        logger.error("/removetime error: %s", exc)
        await update.message.reply_text("Couldn't remove the check-in time. Please try again.")
        return

    await update.message.reply_text(f"✅ Check-in times: {_format_schedules(schedules)}")


@authorized_only
async def cmd_vacation(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /vacation on|off — pause or resume monitoring."""
    service: ScheduleService = context.bot_data["schedule_service"]

    arg = (context.args[0].lower() if context.args else "")
    if arg not in ("on", "off"):
        await update.message.reply_text("Usage: /vacation on  or  /vacation off")
        return

    try:
        await service.set_vacation_mode(update.effective_user.id, arg == "on")
    except SeniorNotFoundError:
        await update.message.reply_text(_NOT_REGISTERED)
        return
    except Exception as exc:
        logger.error("/vacation error: %s", exc)
        await update.message.reply_text("Couldn't change vacation mode. Please try again.")
        return

    if arg == "on":
        await update.message.reply_text("🏖 Vacation mode on. No check-ins are expected until you turn it off.")
    else:
        await update.message.reply_text("Welcome back! Daily check-ins are active again.")


@authorized_only
async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status — show streak, counters and the next deadline."""
    store: SeniorStateDB = context.bot_data["store"]
    user_db: UserDB = context.bot_data["user_db"]
    user_id = update.effective_user.id

    state = store.get_state(user_id)
    if state is None:
        await update.message.reply_text(_NOT_REGISTERED)
        return

    tz_name = user_db.get_timezone(user_id)
    await update.message.reply_text(
        "*Your check-in status:*\n"
        f"Streak: {state.current_streak} day(s)\n"
        f"Missed in a row: {state.consecutive_missed_days}\n"
        f"Missed today: {state.missed_check_ins_today}\n"
        f"Last check-in: {_format_local(state.last_check_in, tz_name)}\n"
        f"Next check-in due: {_format_local(state.next_expected_check_in, tz_name)}\n"
        f"Vacation mode: {'on' if state.vacation_mode else 'off'}",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_watch(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /watch <senior_id> — connect the sender as a caregiver."""
    service: ScheduleService = context.bot_data["schedule_service"]
    user_db: UserDB = context.bot_data["user_db"]
    user = update.effective_user

    senior_id = _parse_user_id_arg(context)
    if senior_id is None:
        await update.message.reply_text("Usage: /watch <senior_user_id>")
        return

    if not user_db.is_registered(user.id):
        user_db.add_user(user.id, user.full_name or str(user.id), chat_id=update.effective_chat.id)

    try:
        service.connect_caregiver(senior_id, user.id)
    except SeniorNotFoundError:
        await update.message.reply_text(f"No senior with ID {senior_id} is registered.")
        return
    except ValueError as exc:
        await update.message.reply_text(str(exc))
        return

    senior = user_db.get_user(senior_id)
    name = senior.display_name if senior else str(senior_id)
    await update.message.reply_text(f"✅ You'll be alerted if {name} misses a check-in.")


@authorized_only
async def cmd_unwatch(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unwatch <senior_id> — stop receiving a senior's alerts."""
    service: ScheduleService = context.bot_data["schedule_service"]

    senior_id = _parse_user_id_arg(context)
    if senior_id is None:
        await update.message.reply_text("Usage: /unwatch <senior_user_id>")
        return

    if service.disconnect_caregiver(senior_id, update.effective_user.id):
        await update.message.reply_text(f"You no longer receive alerts for {senior_id}.")
    else:
        await update.message.reply_text(f"You weren't watching {senior_id}.")


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    store: SeniorStateDB | None = None,
    user_db: UserDB | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        store: Senior state store. Defaults to SeniorStateDB at DATABASE_PATH.
        user_db: User/connection store. Defaults to UserDB at DATABASE_PATH.
    """
    from src.adapters.job_queue_dispatcher import JobQueueTaskDispatcher
    from src.core.alert_dispatch import AlertDispatcher
    from src.core.check_in_reconciler import CheckInReconciler
    from src.core.daily_reset import DailyCounterReset
    from src.core.missed_check_in import MissedCheckInDetector
    from src.core.schedule_service import ScheduleService
    from src.core.sweep import MissedCheckInSweep
    from src.core.task_orchestrator import CheckInTaskOrchestrator
    from src.data.db import SeniorStateDB, UserDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    # Wire default adapters if not provided
    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)
    store = store or SeniorStateDB()
    user_db = user_db or UserDB()

    dispatcher = JobQueueTaskDispatcher(app.job_queue)
    alerts = AlertDispatcher(notifier, user_db)
    orchestrator = CheckInTaskOrchestrator(store, dispatcher, user_db)

    # Store services in bot_data for handler and job access
    app.bot_data["notifier"] = notifier
    app.bot_data["store"] = store
    app.bot_data["user_db"] = user_db
    app.bot_data["orchestrator"] = orchestrator
    app.bot_data["detector"] = MissedCheckInDetector(store, orchestrator, alerts)
    app.bot_data["reconciler"] = CheckInReconciler(store, orchestrator)
    app.bot_data["schedule_service"] = ScheduleService(store, user_db, orchestrator)
    app.bot_data["sweep"] = MissedCheckInSweep(store, orchestrator, alerts)
    app.bot_data["daily_reset"] = DailyCounterReset(store, user_db)

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("checkin", cmd_checkin))
    app.add_handler(CommandHandler("schedules", cmd_schedules))
    app.add_handler(CommandHandler("addtime", cmd_addtime))
    app.add_handler(CommandHandler("removetime", cmd_removetime))
    app.add_handler(CommandHandler("vacation", cmd_vacation))
    app.add_handler(CommandHandler("status", cmd_status))
    app.add_handler(CommandHandler("watch", cmd_watch))
    app.add_handler(CommandHandler("unwatch", cmd_unwatch))

    _setup_background_jobs(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


async def _rearm_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Start-up: in-memory jobs are gone after a restart, arm everyone again."""
    await context.bot_data["orchestrator"].rearm_all()


async def _sweep_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        await context.bot_data["sweep"].run()
    except Exception as exc:
        logger.error("Sweep job failed: %s", exc)


async def _daily_reset_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        context.bot_data["daily_reset"].reset_daily_counters()
    except Exception as exc:
        logger.error("Daily reset job failed: %s", exc)


def _setup_background_jobs(app: Application) -> None:
    """Register the start-up re-arm, the periodic sweep and the daily reset."""
    app.job_queue.run_once(_rearm_job_callback, when=0, name="startup_rearm")
    app.job_queue.run_repeating(
        _sweep_job_callback,
        interval=timedelta(minutes=settings.SWEEP_INTERVAL_MINUTES),
        first=timedelta(minutes=1),
        name="missed_check_in_sweep",
    )
    app.job_queue.run_repeating(
        _daily_reset_job_callback,
        interval=timedelta(minutes=settings.DAILY_RESET_INTERVAL_MINUTES),
        first=timedelta(seconds=30),
        name="daily_counter_reset",
    )

    logger.info(
        "Background jobs scheduled: sweep every %d min, daily reset every %d min",
        settings.SWEEP_INTERVAL_MINUTES,
        settings.DAILY_RESET_INTERVAL_MINUTES,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting SafeCheck Monitor bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
