"""Tests for channel adapters and the channel registry."""

import json
import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.exceptions import DeliveryAdapterError
from src.models.enums import NotificationChannel
from src.models.notification import Notification
from src.modules.notifications.channels import (
    ChannelRegistry,
    InAppAdapter,
    InMemoryConnectionRegistry,
    LoggingAdapter,
    WebhookAdapter,
)


def _notification(channel=NotificationChannel.IN_APP, user_id="user-1", body="Your order shipped"):
    return Notification(
        id=uuid.uuid4(),
        user_id=user_id,
        channel=channel,
        title="Order update",
        body=body,
        data={"order_id": "o-1"},
    )


class TestConnectionRegistry:

    def test_user_is_connected_while_any_socket_is_open(self):
        registry = InMemoryConnectionRegistry()
        registry.connect("user-1", "s1")
        registry.connect("user-1", "s2")

        registry.disconnect("user-1", "s1")
        assert registry.is_connected("user-1")

        registry.disconnect("user-1", "s2")
        assert not registry.is_connected("user-1")
        assert registry.connected_users() == []

    def test_disconnect_unknown_user_is_harmless(self):
        registry = InMemoryConnectionRegistry()
        registry.disconnect("ghost", "s1")
        assert not registry.is_connected("ghost")


class TestInAppAdapter:

    @pytest.mark.asyncio
    async def test_pushes_to_connected_user(self):
        registry = InMemoryConnectionRegistry()
        registry.connect("user-1", "s1")
        sender = AsyncMock()
        notification = _notification()

        assert await InAppAdapter(registry, sender).deliver(notification) is True
        sender.assert_awaited_once_with(notification)

    @pytest.mark.asyncio
    async def test_offline_user_still_counts_as_delivered(self):
        sender = AsyncMock()

        assert await InAppAdapter(InMemoryConnectionRegistry(), sender).deliver(_notification()) is True
        sender.assert_not_awaited()


class TestLoggingAdapter:

    @pytest.mark.asyncio
    async def test_always_accepts(self):
        adapter = LoggingAdapter(NotificationChannel.SMS)
        assert await adapter.deliver(_notification(NotificationChannel.SMS)) is True


def _webhook(handler, channel=NotificationChannel.PUSH):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookAdapter(channel, "https://provider.test/send", api_key="secret", client=client)


class TestWebhookAdapter:

    @pytest.mark.asyncio
    async def test_posts_payload_with_bearer_token(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        adapter = _webhook(handler)
        notification = _notification(NotificationChannel.PUSH)

        assert await adapter.deliver(notification) is True

        [request] = requests
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["notification_id"] == str(notification.id)
        assert body["title"] == "Order update"
        assert body["data"] == {"order_id": "o-1"}
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_email_payload_escapes_html(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200)

        adapter = _webhook(handler, NotificationChannel.EMAIL)
        await adapter.deliver(_notification(NotificationChannel.EMAIL, body="<b>hi</b>"))

        [body] = requests
        assert body["subject"] == "Order update"
        assert body["text"] == "<b>hi</b>"
        assert body["html"] == "<p>&lt;b&gt;hi&lt;/b&gt;</p>"
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_retries_retryable_status_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(200)])
        adapter = _webhook(lambda request: next(responses))

        with patch("src.modules.notifications.channels.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await adapter.deliver(_notification(NotificationChannel.PUSH)) is True

        sleep.assert_awaited_once()
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_client_error_raises_without_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        adapter = _webhook(handler)

        with pytest.raises(DeliveryAdapterError, match="400"):
            await adapter.deliver(_notification(NotificationChannel.PUSH))
        assert len(calls) == 1
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        adapter = _webhook(handler)

        with patch("src.modules.notifications.channels.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(DeliveryAdapterError, match="500"):
                await adapter.deliver(_notification(NotificationChannel.PUSH))
        assert len(calls) == 3
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_unreachable_provider_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _webhook(handler)

        with patch("src.modules.notifications.channels.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(DeliveryAdapterError, match="unreachable"):
                await adapter.deliver(_notification(NotificationChannel.PUSH))
        await adapter.aclose()


class TestChannelRegistry:

    @pytest.mark.asyncio
    async def test_routes_by_channel(self):
        push = AsyncMock()
        push.deliver.return_value = True
        registry = ChannelRegistry({NotificationChannel.PUSH: push})

        assert await registry.deliver(_notification(NotificationChannel.PUSH)) is True
        push.deliver.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_adapter_returns_false(self):
        registry = ChannelRegistry()
        assert await registry.deliver(_notification(NotificationChannel.SMS)) is False

    @pytest.mark.asyncio
    async def test_adapter_errors_propagate(self):
        broken = AsyncMock()
        broken.deliver.side_effect = DeliveryAdapterError("nope")
        registry = ChannelRegistry({NotificationChannel.SMS: broken})

        with pytest.raises(DeliveryAdapterError):
            await registry.deliver(_notification(NotificationChannel.SMS))

    @pytest.mark.asyncio
    async def test_aclose_closes_adapters_that_support_it(self):
        closable = AsyncMock()
        registry = ChannelRegistry({
            NotificationChannel.PUSH: closable,
            NotificationChannel.SMS: LoggingAdapter(NotificationChannel.SMS),
        })

        await registry.aclose()

        closable.aclose.assert_awaited_once()
