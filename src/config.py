"""
Manvi Assistant — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (inbound transport)
    TELEGRAM_BOT_TOKEN: str

    # Primary classification provider (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str

    # Fallback provider — must support strict JSON output (openai, gemini)
    FALLBACK_LLM_PROVIDER: str = "openai"
    FALLBACK_LLM_MODEL: str = ""
    FALLBACK_LLM_API_KEY: str = ""

    # Daily ceiling on primary provider calls
    PRIMARY_DAILY_LIMIT: int = 20
    LLM_TIMEOUT_SECONDS: float = 20.0

    # Outbound delivery: "telegram" | "whatsapp"
    NOTIFIER: str = "telegram"
    NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # WhatsApp Cloud API (only needed when NOTIFIER=whatsapp)
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_ACCESS_TOKEN: str = ""

    # Owner identity — "self" resolves to OWNER_DESTINATION
    OWNER_DESTINATION: str = ""
    OWNER_NAME: str = "Owner"
    ASSISTANT_NAME: str = "Manvi"

    # SQLite
    DATABASE_PATH: str = "data/assistant.db"

    # Dispatch
    TIMEZONE: str = "Asia/Kolkata"
    REMINDER_POLL_SECONDS: int = 60
    ROUTINE_POLL_SECONDS: int = 60
    EVENT_CHECK_HOUR: int = 8

    @field_validator("PRIMARY_DAILY_LIMIT", "EVENT_CHECK_HOUR", mode="before")
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @field_validator("PRIMARY_DAILY_LIMIT")
    @classmethod
    def non_negative_limit(cls, v: int) -> int:
        if v < 0:
            raise ValueError("PRIMARY_DAILY_LIMIT must be >= 0")
        return v

    @field_validator("EVENT_CHECK_HOUR")
    @classmethod
    def valid_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("EVENT_CHECK_HOUR must be between 0 and 23")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        FALLBACK_LLM_PROVIDER=os.getenv("FALLBACK_LLM_PROVIDER", "openai"),
        FALLBACK_LLM_MODEL=os.getenv("FALLBACK_LLM_MODEL", ""),
        FALLBACK_LLM_API_KEY=os.getenv("FALLBACK_LLM_API_KEY", ""),
        PRIMARY_DAILY_LIMIT=os.getenv("PRIMARY_DAILY_LIMIT", "20"),
        LLM_TIMEOUT_SECONDS=os.getenv("LLM_TIMEOUT_SECONDS", "20"),
        NOTIFIER=os.getenv("NOTIFIER", "telegram"),
        NOTIFY_TIMEOUT_SECONDS=os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"),
        WHATSAPP_PHONE_NUMBER_ID=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        WHATSAPP_ACCESS_TOKEN=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        OWNER_DESTINATION=os.getenv("OWNER_DESTINATION", ""),
        OWNER_NAME=os.getenv("OWNER_NAME", "Owner"),
        ASSISTANT_NAME=os.getenv("ASSISTANT_NAME", "Manvi"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/assistant.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Kolkata"),
        REMINDER_POLL_SECONDS=os.getenv("REMINDER_POLL_SECONDS", "60"),
        ROUTINE_POLL_SECONDS=os.getenv("ROUTINE_POLL_SECONDS", "60"),
        EVENT_CHECK_HOUR=os.getenv("EVENT_CHECK_HOUR", "8"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
