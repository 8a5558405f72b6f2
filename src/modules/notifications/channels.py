"""Channel delivery adapters and the channel → adapter strategy table."""

from __future__ import annotations

import asyncio
import html
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol

import httpx

from src.exceptions import DeliveryAdapterError
from src.models.enums import NotificationChannel
from src.models.notification import Notification

logger = logging.getLogger(__name__)

# Retry config for provider webhooks
_MAX_RETRIES = 2
_RETRY_STATUSES = {429, 500, 502, 503, 504}
_BASE_BACKOFF_SECONDS = 0.5

LiveSender = Callable[[Notification], Awaitable[None]]


class ChannelAdapter(Protocol):
    """Sends one notification; returns True when the transport accepted it."""

    async def deliver(self, notification: Notification) -> bool: ...


class ConnectionRegistry(Protocol):
    def is_connected(self, user_id: str) -> bool: ...


class InMemoryConnectionRegistry:
    """Tracks live socket ids per user for the in-app channel."""

    def __init__(self) -> None:
        self._sockets: dict[str, set[str]] = defaultdict(set)

    def connect(self, user_id: str, socket_id: str) -> None:
        self._sockets[user_id].add(socket_id)

    def disconnect(self, user_id: str, socket_id: str) -> None:
        sockets = self._sockets.get(user_id)
        if sockets is None:
            return
        sockets.discard(socket_id)
        if not sockets:
            del self._sockets[user_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self._sockets.get(user_id))

    def connected_users(self) -> list[str]:
        return list(self._sockets)


class InAppAdapter:
    """Pushes to connected users; offline users read it on their next connect.

    The notification row is the in-app inbox, so delivery succeeds whether
    or not the user is online right now.
    """

    def __init__(self, connections: ConnectionRegistry, sender: LiveSender | None = None) -> None:
        self._connections = connections
        self._sender = sender

    async def deliver(self, notification: Notification) -> bool:
        if self._sender is not None and self._connections.is_connected(notification.user_id):
            await self._sender(notification)
        return True


class LoggingAdapter:
    """Log-only transport for channels without a configured provider."""

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel

    async def deliver(self, notification: Notification) -> bool:
        logger.info(
            "Would send %s to user %s: %s", self.channel.value, notification.user_id, notification.title
        )
        return True


class WebhookAdapter:
    """Hands notifications to an HTTP provider (push gateway, mail or SMS relay).

    Retryable statuses are retried with exponential backoff; anything else
    raises :class:`DeliveryAdapterError`.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.channel = channel
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _build_payload(self, notification: Notification) -> dict:
        payload = {
            "notification_id": str(notification.id),
            "user_id": notification.user_id,
            "channel": self.channel.value,
            "data": notification.data or {},
        }
        if self.channel == NotificationChannel.EMAIL:
            payload.update(
                subject=notification.title,
                text=notification.body,
                html=f"<p>{html.escape(notification.body)}</p>",
            )
        else:
            payload.update(title=notification.title, body=notification.body)
        return payload

    async def deliver(self, notification: Notification) -> bool:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = self._build_payload(notification)

        for attempt in range(_MAX_RETRIES + 1):
            try:
                response = await client.post(self.url, json=payload, headers=headers)
            except httpx.RequestError as exc:
                if attempt >= _MAX_RETRIES:
                    raise DeliveryAdapterError(f"{self.channel.value} provider unreachable: {exc}") from exc
            else:
                if response.status_code < 400:
                    return True
                if response.status_code not in _RETRY_STATUSES or attempt >= _MAX_RETRIES:
                    raise DeliveryAdapterError(
                        f"{self.channel.value} provider returned {response.status_code}"
                    )
            delay = _BASE_BACKOFF_SECONDS * (2 ** attempt)
            logger.warning(
                "%s delivery of %s failed, retrying in %.1fs (attempt %d/%d)",
                self.channel.value, notification.id, delay, attempt + 1, _MAX_RETRIES,
            )
            await asyncio.sleep(delay)
        return False

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class ChannelRegistry:
    """Strategy table mapping each NotificationChannel to its adapter."""

    def __init__(self, adapters: Mapping[NotificationChannel, ChannelAdapter] | None = None) -> None:
        self._adapters: dict[NotificationChannel, ChannelAdapter] = dict(adapters or {})

    def register(self, channel: NotificationChannel, adapter: ChannelAdapter) -> None:
        self._adapters[channel] = adapter

    def get(self, channel: NotificationChannel) -> ChannelAdapter | None:
        return self._adapters.get(channel)

    async def deliver(self, notification: Notification) -> bool:
        """Route to the channel's adapter. Adapter exceptions propagate."""
        adapter = self.get(notification.channel)
        if adapter is None:
            logger.warning(
                "No adapter registered for channel %s (notification %s)",
                notification.channel, notification.id,
            )
            return False
        return bool(await adapter.deliver(notification))

    async def aclose(self) -> None:
        """Close adapters that hold network clients."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()
