"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like temp-file stores.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("FALLBACK_LLM_API_KEY", "fake-fallback-key-for-tests")
os.environ.setdefault("OWNER_DESTINATION", "1000")
os.environ.setdefault("OWNER_NAME", "Viswanath")
os.environ.setdefault("TIMEZONE", "Asia/Kolkata")
os.environ.setdefault("DATABASE_PATH", ":memory:")

from zoneinfo import ZoneInfo

import pytest

IST = ZoneInfo("Asia/Kolkata")


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores in a test."""
    return str(tmp_path / "test_assistant.db")


@pytest.fixture
def usage_db(tmp_db_path):
    from src.data.db import UsageDB
    return UsageDB(db_path=tmp_db_path)


@pytest.fixture
def reminder_db(tmp_db_path):
    from src.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path)


@pytest.fixture
def routine_db(tmp_db_path):
    from src.data.db import RoutineDB
    return RoutineDB(db_path=tmp_db_path)


@pytest.fixture
def event_db(tmp_db_path):
    from src.data.db import EventDB
    return EventDB(db_path=tmp_db_path)


@pytest.fixture
def contact_db(tmp_db_path):
    from src.data.db import ContactDB
    return ContactDB(db_path=tmp_db_path)


@pytest.fixture
def log_db(tmp_db_path):
    from src.data.db import InteractionLogDB
    return InteractionLogDB(db_path=tmp_db_path)
