"""Notification port — abstract interface for sending messages to destinations.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotifyFailed(Exception):
    """Raised when an outbound message could not be delivered."""


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules.

    Implementations raise NotifyFailed on any delivery error.
    """

    async def send_message(self, destination: str, text: str) -> None: ...
