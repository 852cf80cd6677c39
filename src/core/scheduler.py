"""
Manvi Assistant — Dispatch Scheduler.

Three independent pollers push due items to the notifier:

- Reminders (every minute): pending reminders whose due instant has passed
  are delivered, then marked completed. A failed delivery leaves the
  reminder pending so the next tick retries it.
- Routines (every minute): active routines whose HH:MM equals the current
  minute in the fixed timezone are delivered. No state is written.
- Events (once a day): events whose month and day equal today's are
  delivered.

Each poll is self-contained: a failed read skips the whole tick, a failed
delivery only affects its own item. No lock is held across storage or
notifier calls, and storage calls run in a worker thread.

This module is provider-agnostic: it depends on the NotificationPort
protocol, not on a specific messaging implementation.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable
from zoneinfo import ZoneInfo

from src.data.db import StorageUnavailable
from src.ports.notification_port import NotifyFailed

if TYPE_CHECKING:
    from src.data.db import EventDB, ReminderDB, RoutineDB
    from src.data.models import Event, Reminder, Routine
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

# A late routine tick catches up at most this many skipped minutes
_MAX_ROUTINE_CATCHUP_MINUTES = 5


# ---------------------------------------------------------------------------
# Message formatting
# ---------------------------------------------------------------------------


def format_reminder_message(reminder: Reminder, assistant_name: str) -> str:
    return f"✨ {assistant_name} says: {reminder.message}"


def format_routine_message(routine: Routine) -> str:
    return f"\U0001f504 Routine check: Time to {routine.task_name}!"


def format_event_message(event: Event) -> str:
    return f"\U0001f389 Hey! Just a heads up, today is {event.person_name}'s {event.event_type}!"


def event_falls_on(event_date: str, today: date) -> bool:
    """True if event_date's month and day (year ignored) match today.

    A Feb 29 event is observed on Feb 28 in non-leap years.
    """
    try:
        when = date.fromisoformat(event_date)
    except ValueError:
        logger.warning("Skipping event with invalid date '%s'", event_date)
        return False

    if (when.month, when.day) == (today.month, today.day):
        return True
    return (
        (when.month, when.day) == (2, 29)
        and (today.month, today.day) == (2, 28)
        and not calendar.isleap(today.year)
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class DispatchScheduler:
    """Holds the stores and notifier shared by the three pollers.

    Callers (the job queue) guarantee one running instance per poller;
    different pollers may run concurrently.
    """

    def __init__(
        self,
        reminder_db: ReminderDB,
        routine_db: RoutineDB,
        event_db: EventDB,
        notifier: NotificationPort,
        timezone: str | None = None,
        notify_timeout: float | None = None,
        assistant_name: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if timezone is None or notify_timeout is None or assistant_name is None:
            from src.config import settings
            timezone = timezone or settings.TIMEZONE
            notify_timeout = notify_timeout if notify_timeout is not None else settings.NOTIFY_TIMEOUT_SECONDS
            assistant_name = assistant_name or settings.ASSISTANT_NAME

        self._reminders = reminder_db
        self._routines = routine_db
        self._events = event_db
        self._notifier = notifier
        self._tz = ZoneInfo(timezone)
        self._notify_timeout = notify_timeout
        self._assistant_name = assistant_name
        self._clock = clock or (lambda: datetime.now(self._tz))

        self._last_routine_minute: datetime | None = None
        self._last_event_day: date | None = None

    async def _notify(self, destination: str, text: str) -> bool:
        """Deliver one message, bounded by the notify timeout."""
        try:
            await asyncio.wait_for(
                self._notifier.send_message(destination, text),
                timeout=self._notify_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Delivery to %s timed out after %ss", destination, self._notify_timeout)
            return False
        except NotifyFailed as exc:
            logger.warning("Delivery to %s failed: %s", destination, exc)
            return False
        except Exception as exc:
            logger.error("Unexpected delivery error for %s: %s", destination, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def poll_reminders(self, now: datetime | None = None) -> int:
        """Deliver every pending reminder due at or before now.

        Returns the number of reminders delivered and marked completed.
        """
        now = now or self._clock()
        try:
            due = await asyncio.to_thread(self._reminders.get_due, now)
        except StorageUnavailable as exc:
            logger.error("Reminder poll skipped, cannot read reminders: %s", exc)
            return 0

        completed = 0
        for reminder in due:
            if not await self._notify(reminder.destination, format_reminder_message(reminder, self._assistant_name)):
                continue  # stays pending, retried next tick

            try:
                transitioned = await asyncio.to_thread(self._reminders.mark_completed, reminder.id)
            except StorageUnavailable as exc:
                logger.error(
                    "Reminder #%d delivered but not marked completed, it will be sent again: %s",
                    reminder.id, exc,
                )
                continue

            if transitioned:
                completed += 1
                logger.info("Reminder #%d delivered to %s", reminder.id, reminder.destination)
            else:
                logger.warning("Reminder #%d was completed or deleted during delivery", reminder.id)

        return completed

    # ------------------------------------------------------------------
    # Routines
    # ------------------------------------------------------------------

    def _minutes_to_check(self, now: datetime) -> list[datetime]:
        """Minutes (local, truncated) this tick is responsible for.

        Normally just the current minute. Minutes already handled by an
        earlier tick are never returned again; minutes skipped by a late tick
        are included, up to a small cap.
        """
        current = now.astimezone(self._tz).replace(second=0, microsecond=0)
        last = self._last_routine_minute
        if last is None or current - last > timedelta(minutes=_MAX_ROUTINE_CATCHUP_MINUTES):
            return [current]
        if current <= last:
            return []

        minutes = []
        step = last + timedelta(minutes=1)
        while step <= current:
            minutes.append(step)
            step += timedelta(minutes=1)
        return minutes

    async def poll_routines(self, now: datetime | None = None) -> int:
        """Deliver active routines scheduled for the current minute.

        Returns the number of routines delivered.
        """
        now = now or self._clock()
        minutes = self._minutes_to_check(now)
        if not minutes:
            logger.debug("Routine minute %s already processed", now.strftime("%H:%M"))
            return 0

        keys = [m.strftime("%H:%M") for m in minutes]
        try:
            routines = await asyncio.to_thread(self._routines.get_active_at, keys)
        except StorageUnavailable as exc:
            logger.error("Routine poll skipped, cannot read routines: %s", exc)
            return 0

        self._last_routine_minute = minutes[-1]

        delivered = 0
        for routine in routines:
            if await self._notify(routine.destination, format_routine_message(routine)):
                delivered += 1
                logger.info("Routine #%d fired for %s", routine.id, routine.time_of_day)
        return delivered

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def poll_events(self, now: datetime | None = None) -> int:
        """Deliver events whose month/day is today; at most once per day.

        Returns the number of events delivered.
        """
        now = now or self._clock()
        today = now.astimezone(self._tz).date()
        if self._last_event_day == today:
            logger.debug("Event poll already ran for %s", today)
            return 0

        try:
            events = await asyncio.to_thread(self._events.list_all)
        except StorageUnavailable as exc:
            logger.error("Event poll skipped, cannot read events: %s", exc)
            return 0

        self._last_event_day = today

        delivered = 0
        for event in events:
            if not event_falls_on(event.event_date, today):
                continue
            if await self._notify(event.destination, format_event_message(event)):
                delivered += 1
                logger.info("Event #%d (%s's %s) announced", event.id, event.person_name, event.event_type)
        return delivered
