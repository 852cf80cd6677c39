"""
Manvi Assistant — UI-Agnostic Action Service.

Stateless service layer that executes one inbound message:
resolve intent -> look up the addressee -> persist / query / delete /
forward -> return a structured response object.

Each transport adapter (Telegram today) calls this service and renders the
response objects in its own way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.core.intent_resolver import Intent, IntentKind
from src.core.scheduler import event_falls_on
from src.core.time_normalizer import (
    clean_reminder_text,
    extract_reminder_instant,
    format_clock,
    format_short_datetime,
    local_day_bounds,
    to_due_instant,
)
from src.data.db import StorageUnavailable
from src.ports.notification_port import NotifyFailed

if TYPE_CHECKING:
    from src.core.intent_resolver import IntentResolver
    from src.data.db import ContactDB, EventDB, InteractionLogDB, ReminderDB, RoutineDB
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_GREETINGS = {"hi", "hello", "hey"}
_OWNER_ONLY_QUERIES = {
    IntentKind.QUERY_CONTACTS,
    IntentKind.QUERY_REMINDERS,
    IntentKind.QUERY_ROUTINES,
    IntentKind.QUERY_EVENTS,
}


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class ResponseKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    CHAT = "chat"
    QUERY_RESULT = "query_result"
    CLARIFICATION = "clarification"
    DENIED = "denied"
    NO_ACTION = "no_action"


@dataclass
class Sender:
    """Who sent the inbound message, as identified by the transport."""

    destination: str
    name: str
    is_owner: bool = False


@dataclass
class ServiceResponse:
    kind: ResponseKind
    message: str
    provider_tag: str = ""

    def render(self) -> str:
        """Reply text with the provider tag as an italic footer."""
        if not self.provider_tag:
            return self.message
        return f"{self.message}\n\n_{self.provider_tag}_"


def _display(name: str) -> str:
    return name[:1].upper() + name[1:]


# ---------------------------------------------------------------------------
# ActionService
# ---------------------------------------------------------------------------


class ActionService:
    """Executes resolved intents against the stores and the notifier.

    Returns structured response objects — never replies to the sender directly.
    """

    def __init__(
        self,
        resolver: IntentResolver,
        notifier: NotificationPort,
        reminder_db: ReminderDB,
        routine_db: RoutineDB,
        event_db: EventDB,
        contact_db: ContactDB,
        log_db: InteractionLogDB | None = None,
        owner_destination: str | None = None,
        owner_name: str | None = None,
        assistant_name: str | None = None,
        timezone: str | None = None,
        notify_timeout: float | None = None,
    ) -> None:
        from src.config import settings

        self._resolver = resolver
        self._notifier = notifier
        self._reminders = reminder_db
        self._routines = routine_db
        self._events = event_db
        self._contacts = contact_db
        self._log_db = log_db
        self._owner_destination = owner_destination if owner_destination is not None else settings.OWNER_DESTINATION
        self._owner_name = owner_name or settings.OWNER_NAME
        self._assistant_name = assistant_name or settings.ASSISTANT_NAME
        self._tz = ZoneInfo(timezone or settings.TIMEZONE)
        self._notify_timeout = notify_timeout if notify_timeout is not None else settings.NOTIFY_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def identify_sender(self, destination: str, display_name: str | None = None) -> Sender:
        """Build a Sender: the owner, a known contact, or a guest."""
        if self._owner_destination and destination == self._owner_destination:
            return Sender(destination=destination, name=self._owner_name, is_owner=True)

        try:
            contact = self._contacts.find_by_destination(destination)
        except StorageUnavailable as exc:
            logger.warning("Address book unavailable while identifying %s: %s", destination, exc)
            contact = None
        if contact is not None:
            return Sender(destination=destination, name=_display(contact.name))
        return Sender(destination=destination, name=display_name or "Guest")

    async def process_text(
        self, text: str, sender: Sender, now: datetime | None = None,
    ) -> ServiceResponse:
        """Execute one inbound message and return the reply to send back."""
        now = now or datetime.now(self._tz)

        if text.lower().strip() in _GREETINGS:
            response = self.greeting(sender)
        else:
            intent = await self._resolver.resolve(text, now)
            try:
                response = await self._execute(intent, text, sender, now)
            except StorageUnavailable as exc:
                logger.error("Database error while handling '%s': %s", intent.kind.value, exc)
                response = ServiceResponse(
                    kind=ResponseKind.ERROR,
                    message="Oops, I ran into a database error trying to save that. \U0001f6a8",
                )
            response.provider_tag = intent.provider_tag

        self._log_interaction(sender, text, response.render())
        return response

    def greeting(self, sender: Sender) -> ServiceResponse:
        """Canned greeting; costs no provider call."""
        if sender.is_owner:
            message = (
                f"Hi {self._owner_name}! \U0001f44b I'm {self._assistant_name}. My AI brain is online! \U0001f9e0\n\n"
                "You can talk to me naturally:\n"
                "\U0001f4cc \"Remind me at 4 PM to review the report\"\n"
                "\U0001f504 \"Set a daily routine to remind dad to take his medicine at 9 AM\"\n"
                "\U0001f389 \"Manu's birthday is on Feb 9th 2026\"\n"
                "✉️ \"Send a message to dad and tell him I will be 10 minutes late\"\n"
                "\U0001f4c7 /addcontact dad 2000"
            )
        else:
            message = (
                f"Hi {sender.name}! \U0001f44b I'm {self._assistant_name}, {self._owner_name}'s personal AI assistant. \U0001f9e0\n\n"
                "If you want me to pass a message to them or save a reminder, just let me know!"
            )
        return ServiceResponse(kind=ResponseKind.SUCCESS, message=message)

    def add_contact(self, sender: Sender, name: str, destination: str) -> ServiceResponse:
        """Save an address-book entry. Owner only."""
        if not sender.is_owner:
            return ServiceResponse(
                kind=ResponseKind.DENIED,
                message=f"\U0001f512 Only {self._owner_name} can edit the address book.",
            )

        name, destination = name.strip(), destination.strip()
        if not name or not destination:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message="Usage: /addcontact <name> <destination>",
            )

        try:
            existing = self._contacts.find_by_name(name)
            if existing is not None:
                return ServiceResponse(
                    kind=ResponseKind.NO_ACTION,
                    message=f"{_display(existing.name)} is already in the address book.",
                )
            contact = self._contacts.add_contact(name, destination)
        except StorageUnavailable as exc:
            logger.error("Could not save contact '%s': %s", name, exc)
            return ServiceResponse(
                kind=ResponseKind.ERROR,
                message="Oops, I ran into a database error trying to save that. \U0001f6a8",
            )
        return ServiceResponse(
            kind=ResponseKind.SUCCESS,
            message=f"\U0001f4c7 Saved {_display(contact.name)} to the address book.",
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _execute(
        self, intent: Intent, text: str, sender: Sender, now: datetime,
    ) -> ServiceResponse:
        kind = intent.kind

        if kind is IntentKind.CHAT:
            return ServiceResponse(kind=ResponseKind.CHAT, message=intent.payload or "\U0001f642")
        if kind is IntentKind.PROVIDER_ERROR:
            return self._handle_provider_error(intent, text, sender, now)
        if kind is IntentKind.UNKNOWN:
            return ServiceResponse(
                kind=ResponseKind.NO_ACTION,
                message=f"I'm sorry {sender.name}, my AI didn't quite understand that. Could you rephrase it? \U0001f916",
            )

        if kind in _OWNER_ONLY_QUERIES:
            if not sender.is_owner:
                return ServiceResponse(
                    kind=ResponseKind.DENIED,
                    message=(
                        f"\U0001f512 I'm sorry {sender.name}, but only {self._owner_name} "
                        "has clearance to access my global memory banks."
                    ),
                )
            return self._handle_owner_query(kind, now)

        if kind is IntentKind.DELETE_TASK:
            if not sender.is_owner:
                return ServiceResponse(
                    kind=ResponseKind.DENIED,
                    message=f"\U0001f512 Only {self._owner_name} can delete memories.",
                )
            return self._handle_delete(intent)

        if kind is IntentKind.QUERY_SCHEDULE:
            return self._handle_query_schedule(intent)

        # The remaining kinds name an addressee, who must be known
        target = self._resolve_target(intent, sender)
        if isinstance(target, ServiceResponse):
            return target
        destination, name = target

        if kind is IntentKind.QUERY_BIRTHDAY:
            return self._handle_query_birthday(intent, name)
        if kind is IntentKind.EVENT:
            return self._handle_event(intent, destination, name)
        if kind is IntentKind.REMINDER:
            return self._handle_reminder(intent, destination, name, now)
        if kind is IntentKind.ROUTINE:
            return self._handle_routine(intent, destination, name)
        return await self._handle_instant_message(intent, sender, destination, name)

    def _resolve_target(
        self, intent: Intent, sender: Sender,
    ) -> tuple[str, str] | ServiceResponse:
        """Return (destination, display name) or a not-found response."""
        if intent.is_for_self:
            return self._owner_destination or sender.destination, "you"

        contact = self._contacts.find_by_name(intent.target_name)
        if contact is None:
            return ServiceResponse(
                kind=ResponseKind.NO_ACTION,
                message=f'I couldn\'t find "{intent.target_name}" in the address book. Please check the spelling!',
            )
        return contact.destination, _display(contact.name)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _handle_reminder(
        self, intent: Intent, destination: str, name: str, now: datetime,
    ) -> ServiceResponse:
        if intent.time is None:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message="I understood you want a reminder, but I didn't catch the exact time. Could you specify it?",
            )

        due_at = to_due_instant(intent.time, now, self._tz)
        if intent.date is not None:
            dated = datetime.combine(intent.date, intent.time, tzinfo=self._tz)
            if dated > now:
                due_at = dated

        self._reminders.add(
            destination=destination,
            message=intent.payload or "You have a scheduled reminder!",
            due_at=due_at,
            group_label=None if intent.is_for_self else name,
        )
        when = format_clock(due_at, self._tz)
        if due_at.astimezone(self._tz).date() != now.astimezone(self._tz).date():
            when = format_short_datetime(due_at, self._tz)
        return ServiceResponse(kind=ResponseKind.SUCCESS, message=f"✅ Reminder set for {name} at {when}.")

    def _handle_routine(self, intent: Intent, destination: str, name: str) -> ServiceResponse:
        if intent.time is None or not intent.payload:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message="I understood you want a daily routine, but I need both the task and the time. Could you specify them?",
            )

        routine = self._routines.add(destination, intent.payload, intent.time)
        return ServiceResponse(
            kind=ResponseKind.SUCCESS,
            message=f'\U0001f504 Routine set! I\'ll remind {name} to "{routine.task_name}" every day at {routine.time_of_day}.',
        )

    def _handle_event(self, intent: Intent, destination: str, name: str) -> ServiceResponse:
        person = self._owner_name if intent.is_for_self else name
        event_type = intent.payload or "special day"
        if intent.date is None:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message=f"On which date is {person}'s {event_type}? Please include the day and month.",
            )

        self._events.add(destination, person, event_type, intent.date)
        return ServiceResponse(
            kind=ResponseKind.SUCCESS,
            message=f"\U0001f389 Got it! I've saved {person}'s {event_type} for {intent.date.isoformat()}.",
        )

    async def _handle_instant_message(
        self, intent: Intent, sender: Sender, destination: str, name: str,
    ) -> ServiceResponse:
        if not intent.payload:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message="What message would you like me to pass on?",
            )

        if intent.is_for_self:
            text = f"\U0001f4ec Forwarded from {sender.name}: {intent.payload}"
            confirmation = f"✅ I've passed your message to {self._owner_name}!"
        else:
            text = f"✨ Message from {sender.name}: {intent.payload}"
            confirmation = f"✅ Message successfully sent to {name}!"

        try:
            await asyncio.wait_for(
                self._notifier.send_message(destination, text), timeout=self._notify_timeout,
            )
        except (NotifyFailed, asyncio.TimeoutError) as exc:
            logger.warning("Forwarding to %s failed: %s", destination, exc)
            return ServiceResponse(
                kind=ResponseKind.ERROR,
                message=f"⚠️ I couldn't deliver your message to {name} right now. Please try again later.",
            )
        return ServiceResponse(kind=ResponseKind.SUCCESS, message=confirmation)

    def _handle_delete(self, intent: Intent) -> ServiceResponse:
        fragment = (intent.payload or "").strip()
        if not fragment:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message="What should I delete? Name the reminder, routine or event.",
            )

        reminders = self._reminders.delete_matching(fragment)
        if reminders:
            return ServiceResponse(
                kind=ResponseKind.SUCCESS,
                message=f'\U0001f5d1️ Successfully deleted reminder: "{reminders[0].message}"',
            )
        routines = self._routines.delete_matching(fragment)
        if routines:
            return ServiceResponse(
                kind=ResponseKind.SUCCESS,
                message=f'\U0001f5d1️ Successfully deleted routine: "{routines[0].task_name}"',
            )
        events = self._events.delete_matching(fragment)
        if events:
            return ServiceResponse(
                kind=ResponseKind.SUCCESS,
                message=f'\U0001f5d1️ Successfully deleted event for: "{events[0].person_name}"',
            )
        return ServiceResponse(
            kind=ResponseKind.NO_ACTION,
            message=f'I couldn\'t find anything matching "{fragment}" to delete. Try checking your active lists first!',
        )

    def _handle_provider_error(
        self, intent: Intent, text: str, sender: Sender, now: datetime,
    ) -> ServiceResponse:
        """Degraded mode: save explicit clock-time reminders without a provider."""
        if "remind" in text.lower():
            due_at = extract_reminder_instant(text, now, self._tz)
            if due_at is not None:
                message = clean_reminder_text(text)
                self._reminders.add(destination=sender.destination, message=message, due_at=due_at)
                logger.info("Saved reminder via regex fallback while providers are down")
                return ServiceResponse(
                    kind=ResponseKind.SUCCESS,
                    message=f"✅ Reminder set for you at {format_clock(due_at, self._tz)}.",
                )

        return ServiceResponse(
            kind=ResponseKind.ERROR,
            message=f"⚠️ *AI unavailable:*\n{intent.payload}",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _handle_query_birthday(self, intent: Intent, name: str) -> ServiceResponse:
        person = self._owner_name if intent.is_for_self else name
        event = self._events.find_by_person(person, "birthday")
        if event is None:
            return ServiceResponse(
                kind=ResponseKind.QUERY_RESULT,
                message=f"I checked my memory, but I don't have a birthday saved for {person} yet.",
            )
        return ServiceResponse(
            kind=ResponseKind.QUERY_RESULT,
            message=f"\U0001f382 {person}'s birthday is saved as {event.event_date}.",
        )

    def _handle_query_schedule(self, intent: Intent) -> ServiceResponse:
        if intent.date is None:
            return ServiceResponse(
                kind=ResponseKind.CLARIFICATION,
                message='Could you specify which day you want to check? (e.g., "What is my schedule for today?")',
            )

        day = intent.date
        events = [e for e in self._events.list_all() if event_falls_on(e.event_date, day)]
        start, end = local_day_bounds(day, self._tz)
        reminders = self._reminders.list_between(start, end)

        if not events and not reminders:
            return ServiceResponse(
                kind=ResponseKind.QUERY_RESULT,
                message=f"Looks like a free day! I don't see any reminders or events scheduled for {day.isoformat()}. \U0001f334",
            )

        lines = [f"\U0001f4c5 *Your Schedule for {day.isoformat()}:*", ""]
        if events:
            lines.append("*Special Events:*")
            lines.extend(f"- {e.person_name}'s {e.event_type} \U0001f389" for e in events)
        if reminders:
            if events:
                lines.append("")
            lines.append("*Reminders:*")
            lines.extend(f"- {format_clock(r.due_at, self._tz)}: {r.message}" for r in reminders)
        return ServiceResponse(kind=ResponseKind.QUERY_RESULT, message="\n".join(lines))

    def _handle_owner_query(self, kind: IntentKind, now: datetime) -> ServiceResponse:
        if kind is IntentKind.QUERY_CONTACTS:
            contacts = self._contacts.list_all()
            body = "\n".join(f"- {_display(c.name)}" for c in contacts) or "No contacts found."
            message = f"\U0001f4c7 *Saved Address Book:*\n\n{body}"
        elif kind is IntentKind.QUERY_REMINDERS:
            reminders = self._reminders.list_upcoming(now)
            body = "\n".join(
                f"- [{format_short_datetime(r.due_at, self._tz)}] "
                f"{r.group_label + ': ' if r.group_label else ''}{r.message}"
                for r in reminders
            ) or "No active reminders pending! \U0001f334"
            message = f"\U0001f514 *Active Upcoming Reminders:*\n\n{body}"
        elif kind is IntentKind.QUERY_ROUTINES:
            routines = self._routines.list_active()
            body = "\n".join(
                f"- Every day at {r.time_of_day}: {r.task_name}" for r in routines
            ) or "No active routines."
            message = f"\U0001f504 *Active Daily Routines:*\n\n{body}"
        else:
            events = self._events.list_all()
            body = "\n".join(
                f"- {e.event_date}: {e.person_name}'s {e.event_type}" for e in events
            ) or "No special events saved."
            message = f"\U0001f389 *All Special Events:*\n\n{body}"
        return ServiceResponse(kind=ResponseKind.QUERY_RESULT, message=message)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log_interaction(self, sender: Sender, text: str, reply: str) -> None:
        if self._log_db is None:
            return
        try:
            self._log_db.log(sender.name, sender.destination, text, reply)
        except StorageUnavailable as exc:
            logger.warning("Could not write interaction log: %s", exc)
