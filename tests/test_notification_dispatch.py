import asyncio
import json

import httpx
import pytest

from app.services.notifications.dispatch import (
    DispatchResult,
    LoggingNotificationDispatcher,
    WebhookNotificationDispatcher,
    dispatch_with_timeout,
)
from app.services.notifications.registry import NotificationDispatcherRegistry


class TestDispatchWithTimeout:
    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def ok():
            return DispatchResult.ok()

        assert (await dispatch_with_timeout(ok(), 1)).success is True

    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self):
        async def stall():
            await asyncio.sleep(5)
            return DispatchResult.ok()

        result = await dispatch_with_timeout(stall(), 0.01)

        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self):
        async def explode():
            raise RuntimeError("provider rejected")

        result = await dispatch_with_timeout(explode(), 1)

        assert result == DispatchResult.failed("RuntimeError: provider rejected")

    @pytest.mark.asyncio
    async def test_missing_result_is_failure(self):
        async def nothing():
            return None

        assert (await dispatch_with_timeout(nothing(), 1)).success is False


class TestWebhookDispatcher:
    @pytest.mark.asyncio
    async def test_final_delivery_payload(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(202)

        dispatcher = WebhookNotificationDispatcher(
            "http://notifier.test/hooks",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        result = await dispatcher.deliver_final(["a@example.com", "b@example.com"], "msg-1")

        assert result.success is True
        assert captured == [
            {
                "type": "final_delivery",
                "recipientRefs": ["a@example.com", "b@example.com"],
                "messageRef": "msg-1",
            }
        ]

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self):
        dispatcher = WebhookNotificationDispatcher(
            "http://notifier.test/hooks",
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(503, text="maintenance")
                )
            ),
        )

        result = await dispatcher.remind_owner("owner-1", "msg-1")

        assert result.success is False
        assert "503" in result.error

    def test_requires_url(self):
        with pytest.raises(ValueError):
            WebhookNotificationDispatcher("")


class TestDispatcherRegistry:
    def test_known_channel(self):
        dispatcher = NotificationDispatcherRegistry.create_dispatcher("log")
        assert isinstance(dispatcher, LoggingNotificationDispatcher)

    def test_unknown_channel_falls_back_to_log(self):
        dispatcher = NotificationDispatcherRegistry.create_dispatcher("carrier-pigeon")
        assert isinstance(dispatcher, LoggingNotificationDispatcher)

    def test_register_custom_channel(self, dispatcher):
        NotificationDispatcherRegistry.register_dispatcher("recording", lambda: dispatcher)
        try:
            assert NotificationDispatcherRegistry.is_registered("recording")
            assert NotificationDispatcherRegistry.create_dispatcher("recording") is dispatcher
        finally:
            NotificationDispatcherRegistry._factories.pop("recording", None)

        assert "recording" not in NotificationDispatcherRegistry.list_registered_channels()
