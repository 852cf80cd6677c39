"""
Manvi Assistant — Telegram transport.

Receives inbound messages, hands them to the ActionService and replies with
the rendered response. Also registers the three dispatch pollers on the
application's JobQueue.

Anyone may talk to the assistant: the owner (OWNER_DESTINATION) gets the
full feature set, other senders are treated as contacts or guests.
"""

from __future__ import annotations

import logging
from datetime import time as dt_time
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings

if TYPE_CHECKING:
    from src.core.action_service import ActionService, Sender
    from src.core.scheduler import DispatchScheduler
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def _sender_for(update: Update, service: ActionService) -> Sender:
    user = update.effective_user
    display_name = user.first_name if user else None
    return service.identify_sender(str(update.effective_chat.id), display_name)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Reply with the owner or guest greeting."""
    service: ActionService = context.bot_data["service"]
    sender = _sender_for(update, service)
    await update.message.reply_text(service.greeting(sender).render())


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await cmd_start(update, context)


async def cmd_addcontact(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addcontact <name> <destination> (owner only)."""
    service: ActionService = context.bot_data["service"]
    sender = _sender_for(update, service)

    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text("Usage: /addcontact <name> <destination>")
        return

    name, destination = " ".join(args[:-1]), args[-1]
    response = service.add_contact(sender, name, destination)
    await update.message.reply_text(response.render())


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Resolve and execute a free-text message, then reply."""
    if update.message is None or not update.message.text:
        return

    service: ActionService = context.bot_data["service"]
    sender = _sender_for(update, service)

    try:
        response = await service.process_text(update.message.text, sender)
    except Exception as exc:
        logger.error("Action service error: %s", exc)
        await update.message.reply_text(
            "Sorry, something went wrong while handling your message. Please try again."
        )
        return

    await update.message.reply_text(response.render())


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def build_app(notifier: NotificationPort | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to the adapter
                  selected by NOTIFIER (created after the app is built so the
                  Telegram adapter can reuse app.bot).
    """
    from src.core.action_service import ActionService
    from src.core.intent_resolver import build_resolver
    from src.core.scheduler import DispatchScheduler
    from src.core.usage_counter import UsageCounter
    from src.data.db import ContactDB, EventDB, InteractionLogDB, ReminderDB, RoutineDB, UsageDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from src.adapters.notifier_factory import create_notifier
        notifier = create_notifier(app.bot)

    reminder_db = ReminderDB()
    routine_db = RoutineDB()
    event_db = EventDB()

    resolver = build_resolver(UsageCounter(UsageDB()))
    service = ActionService(
        resolver=resolver,
        notifier=notifier,
        reminder_db=reminder_db,
        routine_db=routine_db,
        event_db=event_db,
        contact_db=ContactDB(),
        log_db=InteractionLogDB(),
    )
    scheduler = DispatchScheduler(reminder_db, routine_db, event_db, notifier)

    # Store collaborators in bot_data for handler access
    app.bot_data["service"] = service
    app.bot_data["notifier"] = notifier
    app.bot_data["scheduler"] = scheduler

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("addcontact", cmd_addcontact))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_dispatch_jobs(app, scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_dispatch_jobs(app: Application, scheduler: DispatchScheduler) -> None:
    """Register the reminder, routine and event pollers on the JobQueue.

    The JobQueue runs at most one instance of each job at a time, so a slow
    poll delays its own next tick instead of overlapping with it.
    """
    tz = ZoneInfo(settings.TIMEZONE)

    async def _reminder_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.poll_reminders()

    async def _routine_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.poll_routines()

    async def _event_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.poll_events()

    app.job_queue.run_repeating(
        _reminder_job, interval=settings.REMINDER_POLL_SECONDS, first=1, name="reminder_poller",
    )
    app.job_queue.run_repeating(
        _routine_job, interval=settings.ROUTINE_POLL_SECONDS, first=1, name="routine_poller",
    )
    app.job_queue.run_daily(
        _event_job,
        time=dt_time(hour=settings.EVENT_CHECK_HOUR, minute=0, tzinfo=tz),
        name="event_poller",
    )

    logger.info(
        "Dispatch scheduled: reminders every %ds, routines every %ds, events daily at %02d:00 %s",
        settings.REMINDER_POLL_SECONDS,
        settings.ROUTINE_POLL_SECONDS,
        settings.EVENT_CHECK_HOUR,
        settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logger.info("Starting %s assistant bot...", settings.ASSISTANT_NAME)
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
