"""
Notification Port.

Defines the interface for sending user notifications.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Interface for notification adapters."""

    async def send_message(self, message: str) -> bool:
        """
        Send a message to the user.

        Returns:
            True if sent successfully, False otherwise.
        """
        ...

    async def send_alert(self, message: str) -> bool:
        """Send a trading alert (best-effort, same delivery as send_message)."""
        ...
