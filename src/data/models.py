"""
Manvi Assistant — Data Models.

The Memory pillar: reminders, routines and special events persist in SQLite
and are polled by the dispatch scheduler. Contacts form the address book
that turns a spoken name into a delivery destination.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

REMINDER_PENDING = "pending"
REMINDER_COMPLETED = "completed"


@dataclass
class Reminder:
    """A one-off reminder, delivered once at or after due_at.

    status moves pending → completed exactly once and never back.
    """

    id: int
    destination: str
    message: str
    due_at: datetime                   # timezone-aware, stored as UTC
    status: str = REMINDER_PENDING
    group_label: str | None = None     # addressee name when not for the owner

    @property
    def is_pending(self) -> bool:
        return self.status == REMINDER_PENDING


@dataclass
class Routine:
    """A daily routine fired every day at time_of_day (local HH:MM)."""

    id: int
    destination: str
    task_name: str
    time_of_day: str                   # "HH:MM" in the fixed timezone
    active: bool = field(default=True)


@dataclass
class Event:
    """A yearly special event (birthday, anniversary, ...).

    Only month and day of event_date matter for dispatch; the year is
    informational.
    """

    id: int
    destination: str
    person_name: str
    event_type: str                    # e.g. "birthday"
    event_date: str                    # ISO format YYYY-MM-DD


@dataclass
class Contact:
    """A named address-book entry.

    When a message mentions a person ("tell dad to call me"), the name is
    looked up here to find the destination to deliver to.
    """

    id: int
    name: str                          # original name, e.g. "Dad"
    destination: str                   # chat id or phone number
    name_normalized: str               # lowercased for case-insensitive lookup
