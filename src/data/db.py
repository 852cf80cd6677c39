"""
Manvi Assistant — SQLite storage.

The Memory pillar: reminders, routines, special events, the address book,
the daily provider-usage counter and the interaction log persist in SQLite
across restarts. Every store opens a short-lived connection per operation,
so the dispatch pollers and inbound message handling never share one.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Iterator, Sequence

from src.data.models import REMINDER_COMPLETED, REMINDER_PENDING, Contact, Event, Reminder, Routine

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 5.0
_INSTANT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class StorageUnavailable(Exception):
    """Raised when the SQLite database cannot be opened, read or written."""


# ---------------------------------------------------------------------------
# Value conversion helpers
# ---------------------------------------------------------------------------


def to_db_instant(value: datetime) -> str:
    """Serialize an aware datetime as a UTC string that sorts chronologically."""
    if value.tzinfo is None:
        raise ValueError("Instants must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(_INSTANT_FORMAT)


def from_db_instant(value: str) -> datetime:
    return datetime.strptime(value, _INSTANT_FORMAT).replace(tzinfo=timezone.utc)


def normalize_time_of_day(value: str | time) -> str:
    """Return "HH:MM" for a time object or an "H:MM" / "HH:MM:SS" string."""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def _like_pattern(fragment: str) -> str:
    escaped = fragment.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ---------------------------------------------------------------------------
# Base store
# ---------------------------------------------------------------------------


class _SQLiteStore(ABC):
    """Shared connection handling for all tables."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _session(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction.

        Commits on normal exit; closing without commit discards the
        transaction on any error. sqlite3 errors surface as StorageUnavailable.
        """
        try:
            conn = sqlite3.connect(
                self._db_path, timeout=_BUSY_TIMEOUT_SECONDS, isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open database {self._db_path}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise StorageUnavailable(str(exc)) from exc
        finally:
            conn.close()

    @abstractmethod
    def _init_db(self) -> None:
        """Create this store's table if it does not exist."""


# ---------------------------------------------------------------------------
# Usage counter
# ---------------------------------------------------------------------------


class UsageDB(_SQLiteStore):
    """One row per calendar day counting primary-provider calls."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_usage (
                    usage_date    TEXT    PRIMARY KEY,
                    primary_count INTEGER NOT NULL DEFAULT 0
                )
            """)
        logger.debug("api_usage table initialized at %s", self._db_path)

    def consume(self, day: str, ceiling: int) -> int | None:
        """Atomically increment the day's count if it is below ceiling.

        Returns the new count, or None when the ceiling is already reached
        (state untouched). The row is created at zero on first access.
        """
        with self._session(immediate=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO api_usage (usage_date, primary_count) VALUES (?, 0)",
                (day,),
            )
            cursor = conn.execute(
                """
                UPDATE api_usage SET primary_count = primary_count + 1
                WHERE usage_date = ? AND primary_count < ?
                """,
                (day, ceiling),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT primary_count FROM api_usage WHERE usage_date = ?", (day,),
            ).fetchone()
        return row["primary_count"]

    def get_count(self, day: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT primary_count FROM api_usage WHERE usage_date = ?", (day,),
            ).fetchone()
        return 0 if row is None else row["primary_count"]


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class ReminderDB(_SQLiteStore):
    """One-off reminders polled by the dispatch scheduler."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    destination TEXT NOT NULL,
                    message     TEXT NOT NULL,
                    due_at      TEXT NOT NULL,
                    status      TEXT NOT NULL DEFAULT 'pending',
                    group_label TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders (status, due_at)"
            )
        logger.debug("reminders table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            destination=row["destination"],
            message=row["message"],
            due_at=from_db_instant(row["due_at"]),
            status=row["status"],
            group_label=row["group_label"],
        )

    def add(
        self,
        destination: str,
        message: str,
        due_at: datetime,
        group_label: str | None = None,
    ) -> Reminder:
        """Insert a pending reminder."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminders (destination, message, due_at, status, group_label)
                VALUES (?, ?, ?, ?, ?)
                """,
                (destination, message, to_db_instant(due_at), REMINDER_PENDING, group_label),
            )
            reminder_id = cursor.lastrowid

        reminder = Reminder(
            id=reminder_id,
            destination=destination,
            message=message,
            due_at=from_db_instant(to_db_instant(due_at)),
            group_label=group_label,
        )
        logger.info("Reminder added: #%d due %s", reminder_id, to_db_instant(due_at))
        return reminder

    def get(self, reminder_id: int) -> Reminder | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def get_due(self, now: datetime) -> list[Reminder]:
        """Return all pending reminders with due_at <= now."""
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE status = ? AND due_at <= ? ORDER BY due_at",
                (REMINDER_PENDING, to_db_instant(now)),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def mark_completed(self, reminder_id: int) -> bool:
        """Transition a reminder pending → completed.

        Guarded: only a row that is still pending changes. Returns False if
        the row was already completed or has been deleted.
        """
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET status = ? WHERE id = ? AND status = ?",
                (REMINDER_COMPLETED, reminder_id, REMINDER_PENDING),
            )
        return cursor.rowcount > 0

    def list_upcoming(self, now: datetime) -> list[Reminder]:
        """Pending reminders due strictly after now, soonest first."""
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE status = ? AND due_at > ? ORDER BY due_at",
                (REMINDER_PENDING, to_db_instant(now)),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def list_between(self, start: datetime, end: datetime) -> list[Reminder]:
        """Reminders (any status) with start <= due_at < end."""
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE due_at >= ? AND due_at < ? ORDER BY due_at",
                (to_db_instant(start), to_db_instant(end)),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def delete_matching(self, fragment: str) -> list[Reminder]:
        """Delete pending reminders whose message contains fragment."""
        pattern = _like_pattern(fragment)
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE status = ? AND message LIKE ? ESCAPE '\\'",
                (REMINDER_PENDING, pattern),
            ).fetchall()
            conn.executemany(
                "DELETE FROM reminders WHERE id = ?", [(r["id"],) for r in rows],
            )
        deleted = [self._row_to_reminder(r) for r in rows]
        for reminder in deleted:
            logger.info("Reminder #%d deleted", reminder.id)
        return deleted


# ---------------------------------------------------------------------------
# Daily routines
# ---------------------------------------------------------------------------


class RoutineDB(_SQLiteStore):
    """Daily routines. Deletion is soft (active = 0)."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS routines (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    destination TEXT    NOT NULL,
                    task_name   TEXT    NOT NULL,
                    time_of_day TEXT    NOT NULL,
                    active      INTEGER NOT NULL DEFAULT 1
                )
            """)
        logger.debug("routines table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_routine(row: sqlite3.Row) -> Routine:
        return Routine(
            id=row["id"],
            destination=row["destination"],
            task_name=row["task_name"],
            time_of_day=row["time_of_day"],
            active=bool(row["active"]),
        )

    def add(self, destination: str, task_name: str, time_of_day: str | time) -> Routine:
        """Insert an active routine. time_of_day is stored as "HH:MM"."""
        hhmm = normalize_time_of_day(time_of_day)
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO routines (destination, task_name, time_of_day, active)
                VALUES (?, ?, ?, 1)
                """,
                (destination, task_name, hhmm),
            )
            routine_id = cursor.lastrowid

        logger.info("Routine added: #%d '%s' daily at %s", routine_id, task_name, hhmm)
        return Routine(
            id=routine_id, destination=destination, task_name=task_name, time_of_day=hhmm,
        )

    def get_active_at(self, minutes: Sequence[str]) -> list[Routine]:
        """Active routines whose time_of_day equals one of the "HH:MM" keys."""
        if not minutes:
            return []
        placeholders = ", ".join("?" for _ in minutes)
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT * FROM routines WHERE active = 1 AND time_of_day IN ({placeholders})"
                " ORDER BY time_of_day, id",
                list(minutes),
            ).fetchall()
        return [self._row_to_routine(r) for r in rows]

    def list_active(self) -> list[Routine]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM routines WHERE active = 1 ORDER BY time_of_day, id"
            ).fetchall()
        return [self._row_to_routine(r) for r in rows]

    def delete_matching(self, fragment: str) -> list[Routine]:
        """Deactivate active routines whose task name contains fragment."""
        pattern = _like_pattern(fragment)
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM routines WHERE active = 1 AND task_name LIKE ? ESCAPE '\\'",
                (pattern,),
            ).fetchall()
            conn.executemany(
                "UPDATE routines SET active = 0 WHERE id = ?", [(r["id"],) for r in rows],
            )
        deleted = [self._row_to_routine(r) for r in rows]
        for routine in deleted:
            routine.active = False
            logger.info("Routine #%d deactivated", routine.id)
        return deleted


# ---------------------------------------------------------------------------
# Special events
# ---------------------------------------------------------------------------


class EventDB(_SQLiteStore):
    """Yearly special events (birthdays, anniversaries)."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS special_events (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    destination TEXT NOT NULL,
                    person_name TEXT NOT NULL,
                    event_type  TEXT NOT NULL,
                    event_date  TEXT NOT NULL
                )
            """)
        logger.debug("special_events table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            destination=row["destination"],
            person_name=row["person_name"],
            event_type=row["event_type"],
            event_date=row["event_date"],
        )

    def add(
        self, destination: str, person_name: str, event_type: str, event_date: str | date,
    ) -> Event:
        """Insert an event. event_date must be a valid ISO date."""
        if isinstance(event_date, date):
            event_date = event_date.isoformat()
        date.fromisoformat(event_date)

        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO special_events (destination, person_name, event_type, event_date)
                VALUES (?, ?, ?, ?)
                """,
                (destination, person_name, event_type, event_date),
            )
            event_id = cursor.lastrowid

        logger.info("Event added: #%d %s's %s on %s", event_id, person_name, event_type, event_date)
        return Event(
            id=event_id,
            destination=destination,
            person_name=person_name,
            event_type=event_type,
            event_date=event_date,
        )

    def list_all(self) -> list[Event]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM special_events ORDER BY event_date, id"
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def find_by_person(self, person_name: str, event_type: str | None = None) -> Event | None:
        """Case-insensitive match on person name, optionally on event type."""
        query = "SELECT * FROM special_events WHERE lower(person_name) = ?"
        params: list = [person_name.strip().lower()]
        if event_type is not None:
            query += " AND lower(event_type) = ?"
            params.append(event_type.strip().lower())
        query += " ORDER BY id LIMIT 1"
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def delete_matching(self, fragment: str) -> list[Event]:
        """Delete events whose person name contains fragment."""
        pattern = _like_pattern(fragment)
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM special_events WHERE person_name LIKE ? ESCAPE '\\'",
                (pattern,),
            ).fetchall()
            conn.executemany(
                "DELETE FROM special_events WHERE id = ?", [(r["id"],) for r in rows],
            )
        deleted = [self._row_to_event(r) for r in rows]
        for event in deleted:
            logger.info("Event #%d deleted", event.id)
        return deleted


# ---------------------------------------------------------------------------
# Address book
# ---------------------------------------------------------------------------


class ContactDB(_SQLiteStore):
    """SQLite-backed address book (name → destination mapping)."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    name            TEXT NOT NULL,
                    destination     TEXT NOT NULL,
                    name_normalized TEXT NOT NULL
                )
            """)
        logger.debug("Contacts table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            name=row["name"],
            destination=row["destination"],
            name_normalized=row["name_normalized"],
        )

    def add_contact(self, name: str, destination: str) -> Contact:
        """Insert a new contact. Normalizes the name for case-insensitive lookup."""
        name_normalized = name.strip().lower()
        with self._session() as conn:
            cursor = conn.execute(
                "INSERT INTO contacts (name, destination, name_normalized) VALUES (?, ?, ?)",
                (name.strip(), destination.strip(), name_normalized),
            )
            contact_id = cursor.lastrowid

        logger.info("Contact added: #%d '%s'", contact_id, name)
        return Contact(
            id=contact_id,
            name=name.strip(),
            destination=destination.strip(),
            name_normalized=name_normalized,
        )

    def find_by_name(self, name: str) -> Contact | None:
        """Case-insensitive exact match on name."""
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE name_normalized = ?", (name.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_contact(row)

    def find_by_destination(self, destination: str) -> Contact | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE destination = ?", (destination.strip(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_contact(row)

    def list_all(self) -> list[Contact]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM contacts ORDER BY name_normalized").fetchall()
        return [self._row_to_contact(r) for r in rows]


# ---------------------------------------------------------------------------
# Interaction log
# ---------------------------------------------------------------------------


class InteractionLogDB(_SQLiteStore):
    """Append-only record of every inbound message and the reply sent."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS interaction_logs (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_name        TEXT NOT NULL,
                    sender_destination TEXT NOT NULL,
                    message            TEXT NOT NULL,
                    bot_response       TEXT NOT NULL,
                    created_at         TEXT NOT NULL
                )
            """)
        logger.debug("interaction_logs table initialized at %s", self._db_path)

    def log(
        self,
        sender_name: str,
        sender_destination: str,
        message: str,
        reply: str,
        at: datetime | None = None,
    ) -> None:
        created_at = to_db_instant(at or datetime.now(timezone.utc))
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO interaction_logs
                    (sender_name, sender_destination, message, bot_response, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (sender_name, sender_destination, message, reply, created_at),
            )
