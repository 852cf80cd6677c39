"""Notifier factory — creates the right outbound adapter based on config."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.config import settings
from src.ports.notification_port import NotificationPort

if TYPE_CHECKING:
    from telegram import Bot


def create_notifier(bot: Bot | None = None) -> NotificationPort:
    """Return the notifier matching the NOTIFIER setting.

    Args:
        bot: Telegram bot instance, required when NOTIFIER=telegram.
    """
    provider = settings.NOTIFIER.lower()

    if provider == "telegram":
        if bot is None:
            raise ValueError("NOTIFIER=telegram requires a Bot instance")
        from src.adapters.telegram_notifier import TelegramNotifier

        return TelegramNotifier(bot)

    if provider == "whatsapp":
        from src.adapters.whatsapp_notifier import WhatsAppNotifier

        return WhatsAppNotifier(
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )

    raise ValueError(f"Unknown NOTIFIER: {provider!r}")
