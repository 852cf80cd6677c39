"""WhatsApp notification adapter — implements NotificationPort.

Sends plain text messages through the WhatsApp Cloud API. Destinations are
phone numbers in international format without the leading "+".
"""

from __future__ import annotations

import logging

import httpx

from src.ports.notification_port import NotifyFailed

logger = logging.getLogger(__name__)

_GRAPH_API_URL = "https://graph.facebook.com/v19.0/{phone_number_id}/messages"
_TIMEOUT_SECONDS = 10


class WhatsAppNotifier:
    """WhatsApp Cloud API implementation of NotificationPort."""

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        timeout: float = _TIMEOUT_SECONDS,
    ) -> None:
        if not phone_number_id or not access_token:
            raise ValueError("WhatsApp notifier needs a phone number id and an access token")
        self._url = _GRAPH_API_URL.format(phone_number_id=phone_number_id)
        self._access_token = access_token
        self._timeout = timeout

    async def send_message(self, destination: str, text: str) -> None:
        payload = {
            "messaging_product": "whatsapp",
            "to": destination,
            "type": "text",
            "text": {"body": text},
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._access_token}"},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp delivery to %s failed: %s", destination, exc)
            raise NotifyFailed(str(exc)) from exc
