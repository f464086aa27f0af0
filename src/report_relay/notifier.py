"""Human-readable operator notifications posted to the chat."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .channel import ChannelClient
    from .config import RelayConfig


class Notifier:
    """Posts short status messages through ``ChannelClient.send_text``.

    Notification failures are logged and never raised: losing a status
    message must not affect report delivery.
    """

    def __init__(self, client: ChannelClient, config: RelayConfig, logger: logging.Logger) -> None:
        self.client = client
        self.config = config
        self.logger = logger

    async def _send(self, icon: str, title: str, body: str) -> bool:
        message = f"{icon} {title}\n\n{body}" if body else f"{icon} {title}"
        try:
            await self.client.send_text(message)
        except Exception as e:
            self.logger.warning("Could not send notification '%s': %s", title, e)
            return False
        return True

    async def info(self, title: str, body: str = "") -> bool:
        return await self._send("ℹ️", title, body)

    async def success(self, title: str, body: str = "") -> bool:
        return await self._send("✅", title, body)

    async def warning(self, title: str, body: str = "") -> bool:
        if not self.config.notify_warnings:
            return False
        return await self._send("⚠️", title, body)

    async def error(self, title: str, body: str = "") -> bool:
        if not self.config.notify_errors:
            return False
        return await self._send("❌", title, body)

    async def startup(self) -> bool:
        if not self.config.notify_startup:
            return False
        return await self._send("🚀", "Report relay started", f"Watching folder: {self.config.reports_folder}")

    async def shutdown(self, summary: str = "") -> bool:
        if not self.config.notify_shutdown:
            return False
        return await self._send("⏹️", "Report relay stopped", summary)
