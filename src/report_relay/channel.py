"""Outbound chat channel: the client contract and a Telegram Bot API client."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import httpx

from .classifier import Destination

logger = logging.getLogger("report-relay")

# Substrings of Bot API 400 descriptions that mean the upload itself is unacceptable
_REJECTED_DESCRIPTIONS = ("file must be non-empty", "file is too big", "request entity too large")


class ChannelError(Exception):
    """Generic, retryable failure talking to the chat service."""

    def __init__(self, code: int | None, message: str) -> None:
        super().__init__(f"[{code}] {message}" if code is not None else message)
        self.code = code
        self.message = message


class RateLimitedError(ChannelError):
    """The service asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(429, message)
        self.retry_after = retry_after


class PayloadRejectedError(ChannelError):
    """The document can never be accepted (empty or oversized)."""


class ChannelClient(Protocol):
    """What the dispatch core needs from the messaging system."""

    async def send_document(self, destination: Destination, path: Path, caption: str) -> None:
        """Upload ``path`` to the destination topic.

        Raises:
            RateLimitedError: The service is throttling us.
            PayloadRejectedError: The file is empty or too large.
            ChannelError: Any other, transient, failure.
            FileNotFoundError: The file vanished before it could be opened.

        """
        ...

    async def send_text(self, message: str, destination: Destination | None = None) -> None:
        """Post a plain text message to the chat (or one of its topics)."""
        ...


def format_size(size: int) -> str:
    """Render a byte count for humans."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def build_caption(path: Path, label: str, size: int, when: datetime | None = None) -> str:
    """Build the caption shown under a delivered report."""
    when = when or datetime.now()
    return (
        f"📄 {path.name}\n"
        f"🗂 {label}\n"
        f"📊 Size: {format_size(size)}\n"
        f"⏰ Sent: {when:%H:%M:%S %d.%m.%Y}"
    )


class TelegramChannelClient:
    """Async client for the Telegram Bot API.

    Usage::

        async with TelegramChannelClient(token, chat_id) as client:
            await client.send_text("hello")
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.chat_id = chat_id
        self._client = httpx.AsyncClient(
            base_url=f"{api_url.rstrip('/')}/bot{token}",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> TelegramChannelClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def send_document(self, destination: Destination, path: Path, caption: str) -> None:
        data = {
            "chat_id": self.chat_id,
            "caption": caption,
            "message_thread_id": str(destination.topic_id),
        }
        with path.open("rb") as f:
            files = {"document": (path.name, f, "application/pdf")}
            await self._call("sendDocument", data=data, files=files)
        logger.debug("Uploaded %s to topic %d", path.name, destination.topic_id)

    async def send_text(self, message: str, destination: Destination | None = None) -> None:
        payload: dict[str, Any] = {"chat_id": self.chat_id, "text": message}
        if destination is not None:
            payload["message_thread_id"] = destination.topic_id
        await self._call("sendMessage", json=payload)

    async def _call(self, method: str, **kwargs: Any) -> dict[str, Any]:
        """POST a Bot API method and map failures onto channel errors."""
        try:
            response = await self._client.post(f"/{method}", **kwargs)
        except httpx.HTTPError as e:
            raise ChannelError(None, f"{method} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success and body.get("ok", False):
            return body.get("result") or {}

        code = int(body.get("error_code") or response.status_code)
        description = str(body.get("description") or response.reason_phrase)

        if code == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise RateLimitedError(description, float(retry_after) if retry_after is not None else None)
        if code == 413 or (code == 400 and any(s in description.lower() for s in _REJECTED_DESCRIPTIONS)):
            raise PayloadRejectedError(code, description)
        raise ChannelError(code, description)
