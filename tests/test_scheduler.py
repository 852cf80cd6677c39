"""Tests for src.core.scheduler — reminder, routine and event pollers."""

from __future__ import annotations

import asyncio
import threading
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from src.core.scheduler import (
    DispatchScheduler,
    event_falls_on,
    format_event_message,
    format_reminder_message,
    format_routine_message,
)
from src.data.db import StorageUnavailable
from src.data.models import REMINDER_COMPLETED, REMINDER_PENDING, Event, Reminder, Routine
from src.ports.notification_port import NotifyFailed

IST = ZoneInfo("Asia/Kolkata")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_scheduler(reminder_db=None, routine_db=None, event_db=None, notifier=None, notify_timeout=5):
    return DispatchScheduler(
        reminder_db or MagicMock(),
        routine_db or MagicMock(),
        event_db or MagicMock(),
        notifier or AsyncMock(),
        timezone="Asia/Kolkata",
        notify_timeout=notify_timeout,
        assistant_name="Manvi",
    )


def _sent_texts(notifier) -> list[str]:
    return [c.args[1] for c in notifier.send_message.call_args_list]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_reminder_message(self):
        reminder = Reminder(id=1, destination="1000", message="check logs", due_at=datetime(2026, 2, 9, tzinfo=IST))
        assert format_reminder_message(reminder, "Manvi") == "✨ Manvi says: check logs"

    def test_routine_message(self):
        routine = Routine(id=1, destination="1000", task_name="take medicine", time_of_day="09:00")
        assert "take medicine" in format_routine_message(routine)

    def test_event_message(self):
        event = Event(id=1, destination="1000", person_name="manu", event_type="birthday", event_date="2026-02-09")
        text = format_event_message(event)
        assert "manu" in text
        assert "birthday" in text


class TestEventFallsOn:
    def test_same_month_day_any_year(self):
        assert event_falls_on("2026-02-09", date(2031, 2, 9)) is True
        assert event_falls_on("1990-02-09", date(2026, 2, 9)) is True

    def test_different_day(self):
        assert event_falls_on("2026-02-09", date(2026, 2, 10)) is False

    def test_leap_day_observed_on_feb_28_in_common_years(self):
        assert event_falls_on("2024-02-29", date(2026, 2, 28)) is True
        assert event_falls_on("2024-02-29", date(2028, 2, 28)) is False
        assert event_falls_on("2024-02-29", date(2028, 2, 29)) is True

    def test_invalid_date(self):
        assert event_falls_on("not-a-date", date(2026, 2, 9)) is False


# ---------------------------------------------------------------------------
# Reminder poller
# ---------------------------------------------------------------------------


class TestPollReminders:
    @pytest.mark.asyncio
    async def test_due_reminder_sent_once(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        reminder = reminder_db.add("1000", "check logs", now - timedelta(seconds=1))
        notifier = AsyncMock()
        scheduler = _make_scheduler(reminder_db=reminder_db, notifier=notifier)

        assert await scheduler.poll_reminders(now) == 1
        notifier.send_message.assert_awaited_once_with("1000", "✨ Manvi says: check logs")
        assert reminder_db.get(reminder.id).status == REMINDER_COMPLETED

        assert await scheduler.poll_reminders(now + timedelta(minutes=1)) == 0
        assert notifier.send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_future_reminder_not_sent(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        reminder_db.add("1000", "later", now + timedelta(minutes=5))
        notifier = AsyncMock()

        assert await _make_scheduler(reminder_db=reminder_db, notifier=notifier).poll_reminders(now) == 0
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_delivery_stays_pending_and_retries(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        reminder = reminder_db.add("1000", "check logs", now - timedelta(seconds=1))
        notifier = AsyncMock()
        notifier.send_message.side_effect = NotifyFailed("network down")
        scheduler = _make_scheduler(reminder_db=reminder_db, notifier=notifier)

        assert await scheduler.poll_reminders(now) == 0
        assert reminder_db.get(reminder.id).status == REMINDER_PENDING

        notifier.send_message.side_effect = None
        assert await scheduler.poll_reminders(now + timedelta(minutes=1)) == 1
        assert reminder_db.get(reminder.id).status == REMINDER_COMPLETED

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        bad = reminder_db.add("2000", "to dad", now - timedelta(minutes=2))
        good = reminder_db.add("1000", "to owner", now - timedelta(minutes=1))

        async def send(destination, text):
            if destination == "2000":
                raise NotifyFailed("blocked")

        notifier = AsyncMock()
        notifier.send_message.side_effect = send

        assert await _make_scheduler(reminder_db=reminder_db, notifier=notifier).poll_reminders(now) == 1
        assert reminder_db.get(bad.id).status == REMINDER_PENDING
        assert reminder_db.get(good.id).status == REMINDER_COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_notifier_error_keeps_pending(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        reminder = reminder_db.add("1000", "x", now - timedelta(seconds=1))
        notifier = AsyncMock()
        notifier.send_message.side_effect = RuntimeError("boom")

        assert await _make_scheduler(reminder_db=reminder_db, notifier=notifier).poll_reminders(now) == 0
        assert reminder_db.get(reminder.id).is_pending

    @pytest.mark.asyncio
    async def test_notify_timeout_keeps_pending(self, reminder_db):
        now = datetime(2026, 2, 9, 14, 12, 0, tzinfo=IST)
        reminder = reminder_db.add("1000", "x", now - timedelta(seconds=1))

        async def slow_send(destination, text):
            await asyncio.sleep(1)

        notifier = AsyncMock()
        notifier.send_message.side_effect = slow_send
        scheduler = _make_scheduler(reminder_db=reminder_db, notifier=notifier, notify_timeout=0.01)

        assert await scheduler.poll_reminders(now) == 0
        assert reminder_db.get(reminder.id).is_pending

    @pytest.mark.asyncio
    async def test_read_failure_skips_cycle(self):
        reminder_db = MagicMock()
        reminder_db.get_due.side_effect = StorageUnavailable("locked")
        notifier = AsyncMock()

        assert await _make_scheduler(reminder_db=reminder_db, notifier=notifier).poll_reminders() == 0
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_mark_completed_failure_is_logged_not_raised(self):
        reminder = Reminder(id=5, destination="1000", message="x", due_at=datetime(2026, 2, 9, tzinfo=IST))
        reminder_db = MagicMock()
        reminder_db.get_due.return_value = [reminder]
        reminder_db.mark_completed.side_effect = StorageUnavailable("disk full")
        notifier = AsyncMock()

        assert await _make_scheduler(reminder_db=reminder_db, notifier=notifier).poll_reminders() == 0
        notifier.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completed_concurrently_not_counted(self):
        reminder = Reminder(id=5, destination="1000", message="x", due_at=datetime(2026, 2, 9, tzinfo=IST))
        reminder_db = MagicMock()
        reminder_db.get_due.return_value = [reminder]
        reminder_db.mark_completed.return_value = False

        assert await _make_scheduler(reminder_db=reminder_db).poll_reminders() == 0

    @pytest.mark.asyncio
    async def test_storage_reads_run_off_the_event_loop(self):
        callers = []
        reminder_db = MagicMock()
        reminder_db.get_due.side_effect = lambda now: callers.append(threading.current_thread()) or []

        await _make_scheduler(reminder_db=reminder_db).poll_reminders()

        assert len(callers) == 1
        assert callers[0] is not threading.main_thread()


# ---------------------------------------------------------------------------
# Routine poller
# ---------------------------------------------------------------------------


class TestPollRoutines:
    @pytest.mark.asyncio
    async def test_fires_on_exact_minute(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, 12, tzinfo=IST)) == 1
        destination, text = notifier.send_message.call_args.args
        assert destination == "2000"
        assert "take medicine" in text

    @pytest.mark.asyncio
    async def test_other_minute_does_not_fire(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 1, tzinfo=IST)) == 0
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_tick_in_same_minute_is_ignored(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, 1, tzinfo=IST))
        await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, 58, tzinfo=IST))
        assert notifier.send_message.await_count == 1

    @pytest.mark.asyncio
    async def test_fires_again_next_day(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, tzinfo=IST))
        await scheduler.poll_routines(datetime(2026, 2, 10, 9, 0, tzinfo=IST))
        assert notifier.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_late_tick_catches_up_skipped_minute(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        await scheduler.poll_routines(datetime(2026, 2, 9, 8, 59, 30, tzinfo=IST))
        # the 09:00 tick ran late and landed in 09:01
        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 1, 2, tzinfo=IST)) == 1

    @pytest.mark.asyncio
    async def test_long_gap_only_checks_current_minute(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        await scheduler.poll_routines(datetime(2026, 2, 9, 8, 0, tzinfo=IST))
        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 30, tzinfo=IST)) == 0

    @pytest.mark.asyncio
    async def test_utc_now_matched_in_local_time(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)

        # 03:30 UTC == 09:00 IST
        utc_now = datetime(2026, 2, 9, 3, 30, tzinfo=ZoneInfo("UTC"))
        assert await scheduler.poll_routines(utc_now) == 1

    @pytest.mark.asyncio
    async def test_inactive_routine_not_sent(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        routine_db.delete_matching("medicine")
        notifier = AsyncMock()

        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)
        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, tzinfo=IST)) == 0

    @pytest.mark.asyncio
    async def test_read_failure_allows_retry_in_same_minute(self, routine_db):
        routine_db.add("2000", "take medicine", "09:00")
        notifier = AsyncMock()
        failing = MagicMock()
        failing.get_active_at.side_effect = StorageUnavailable("locked")
        scheduler = _make_scheduler(routine_db=failing, notifier=notifier)

        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, 1, tzinfo=IST)) == 0

        scheduler._routines = routine_db
        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, 40, tzinfo=IST)) == 1

    @pytest.mark.asyncio
    async def test_one_failed_delivery_does_not_stop_others(self, routine_db):
        routine_db.add("2000", "a", "09:00")
        routine_db.add("3000", "b", "09:00")
        notifier = AsyncMock()
        notifier.send_message.side_effect = [NotifyFailed("x"), None]

        scheduler = _make_scheduler(routine_db=routine_db, notifier=notifier)
        assert await scheduler.poll_routines(datetime(2026, 2, 9, 9, 0, tzinfo=IST)) == 1
        assert notifier.send_message.await_count == 2


# ---------------------------------------------------------------------------
# Event poller
# ---------------------------------------------------------------------------


class TestPollEvents:
    @pytest.mark.asyncio
    async def test_birthday_announced_any_year(self, event_db):
        event_db.add("1000", "manu", "birthday", "2026-02-09")
        notifier = AsyncMock()
        scheduler = _make_scheduler(event_db=event_db, notifier=notifier)

        assert await scheduler.poll_events(datetime(2031, 2, 9, 8, 0, tzinfo=IST)) == 1
        text = _sent_texts(notifier)[0]
        assert "manu" in text
        assert "birthday" in text

    @pytest.mark.asyncio
    async def test_other_days_silent(self, event_db):
        event_db.add("1000", "manu", "birthday", "2026-02-09")
        notifier = AsyncMock()

        assert await _make_scheduler(event_db=event_db, notifier=notifier).poll_events(
            datetime(2026, 2, 10, 8, 0, tzinfo=IST)
        ) == 0
        notifier.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_runs_once_per_day(self, event_db):
        event_db.add("1000", "manu", "birthday", "2026-02-09")
        notifier = AsyncMock()
        scheduler = _make_scheduler(event_db=event_db, notifier=notifier)

        await scheduler.poll_events(datetime(2026, 2, 9, 8, 0, tzinfo=IST))
        await scheduler.poll_events(datetime(2026, 2, 9, 20, 0, tzinfo=IST))
        assert notifier.send_message.await_count == 1

        await scheduler.poll_events(datetime(2027, 2, 9, 8, 0, tzinfo=IST))
        assert notifier.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_leap_day_event_in_common_year(self, event_db):
        event_db.add("1000", "asha", "birthday", "2024-02-29")
        notifier = AsyncMock()

        scheduler = _make_scheduler(event_db=event_db, notifier=notifier)
        assert await scheduler.poll_events(datetime(2026, 2, 28, 8, 0, tzinfo=IST)) == 1

    @pytest.mark.asyncio
    async def test_read_failure_allows_retry_same_day(self, event_db):
        event_db.add("1000", "manu", "birthday", "2026-02-09")
        notifier = AsyncMock()
        failing = MagicMock()
        failing.list_all.side_effect = StorageUnavailable("locked")
        scheduler = _make_scheduler(event_db=failing, notifier=notifier)

        assert await scheduler.poll_events(datetime(2026, 2, 9, 8, 0, tzinfo=IST)) == 0

        scheduler._events = event_db
        assert await scheduler.poll_events(datetime(2026, 2, 9, 8, 5, tzinfo=IST)) == 1
