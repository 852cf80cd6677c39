"""
Manvi Assistant — Daily usage counter for the primary provider.

The primary provider is metered per account, so calls are capped at a fixed
number per calendar day in the fixed timezone. The count lives in the
api_usage table and is only touched through `try_consume()`, which checks
and increments in a single SQLite transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from src.data.db import UsageDB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check."""

    allowed: bool
    remaining: int


class UsageCounter:
    """Enforces the daily ceiling on primary-provider calls."""

    def __init__(
        self,
        usage_db: UsageDB,
        ceiling: int | None = None,
        timezone: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ceiling is None or timezone is None:
            from src.config import settings
            ceiling = settings.PRIMARY_DAILY_LIMIT if ceiling is None else ceiling
            timezone = settings.TIMEZONE if timezone is None else timezone

        self._db = usage_db
        self._ceiling = ceiling
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))

    def today_key(self) -> str:
        """Today's date in the fixed timezone, e.g. "2026-02-09"."""
        return self._clock().astimezone(self._tz).date().isoformat()

    def try_consume(self) -> QuotaDecision:
        """Spend one primary call from today's budget if any is left.

        Raises StorageUnavailable if the database cannot be reached; callers
        treat that as "not allowed".
        """
        day = self.today_key()
        new_count = self._db.consume(day, self._ceiling)
        if new_count is None:
            logger.info("Primary quota exhausted for %s (ceiling=%d)", day, self._ceiling)
            return QuotaDecision(allowed=False, remaining=0)

        remaining = self._ceiling - new_count
        logger.debug("Primary quota consumed for %s: %d used, %d left", day, new_count, remaining)
        return QuotaDecision(allowed=True, remaining=remaining)
