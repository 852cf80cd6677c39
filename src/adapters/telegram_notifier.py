"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Destinations are Telegram chat ids.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

from src.ports.notification_port import NotifyFailed

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, destination: str, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=destination, text=text)
        except TelegramError as exc:
            logger.warning("Telegram delivery to %s failed: %s", destination, exc)
            raise NotifyFailed(str(exc)) from exc
