"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

NotificationHandler = Callable[[str], None]


class DeviceLink(Protocol):
    """One open connection to a reader's provisioning service."""

    address: str

    async def write_command(self, command: str) -> None:
        """Write one command string with response."""

    async def start_notifications(self, handler: NotificationHandler) -> None:
        """Invoke ``handler`` with every decoded notification string."""

    async def stop_notifications(self) -> None:
        """Release the notification subscription. Safe to call twice."""

    async def read_device_id(self) -> str | None:
        """Read the raw device identifier characteristic, if exposed."""
