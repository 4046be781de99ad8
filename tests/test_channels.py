"""
Tests for HTTP outbound delivery and webhook notifications.

HTTP is served by ``httpx.MockTransport``; no network access.
"""
import json

import httpx
import pytest

from config.settings import DeliveryConfig, NotificationConfig
from models.schemas import Message, MessageDirection, User


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def reply():
    return Message(tenant_id="t1", sender_id="a1", recipient_id="c1",
                   direction=MessageDirection.OUTGOING, content="On it")


@pytest.fixture
def customer():
    return User(id="c1", tenant_id="t1", phone="51987654321")


class TestHttpOutboundDelivery:

    def _delivery(self):
        from channels.outbound import HttpOutboundDelivery
        return HttpOutboundDelivery(DeliveryConfig(
            whatsapp_url="https://relay.example.com/whatsapp",
            interceptor_url="https://relay.example.com/push",
            token="secret",
        ))

    @pytest.mark.asyncio
    async def test_whatsapp_route(self, reply, customer):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "wamid.1"})

        delivery = self._delivery()
        delivery._client = _mock_client(handler)

        assert await delivery.send_whatsapp(reply, customer) == "wamid.1"
        assert requests[0].url.path == "/whatsapp"
        body = json.loads(requests[0].content)
        assert body["phone_number"] == "51987654321"
        assert body["message_id"] == reply.id
        await delivery.close()

    @pytest.mark.asyncio
    async def test_interceptor_route_tags_payload(self, reply, customer):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "push-9"})

        delivery = self._delivery()
        delivery._client = _mock_client(handler)

        assert await delivery.send_interceptor(reply, customer) == "push-9"
        assert bodies[0]["type"] == "interceptor_message"
        assert bodies[0]["content"] == "On it"
        await delivery.close()

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, reply, customer):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"id": "wamid.2"})

        delivery = self._delivery()
        delivery._client = _mock_client(handler)

        assert await delivery.send_whatsapp(reply, customer) == "wamid.2"
        assert len(attempts) == 2
        await delivery.close()

    @pytest.mark.asyncio
    async def test_client_carries_bearer_token(self):
        delivery = self._delivery()
        client = await delivery._get_client()
        assert client.headers["Authorization"] == "Bearer secret"
        await delivery.close()
        assert delivery._client is None

    def test_factory_falls_back_to_logging(self):
        from channels.outbound import HttpOutboundDelivery, create_delivery
        from core.collaborators import LoggingDelivery
        assert isinstance(create_delivery(DeliveryConfig()), LoggingDelivery)
        configured = create_delivery(DeliveryConfig(whatsapp_url="https://a", interceptor_url="https://b"))
        assert isinstance(configured, HttpOutboundDelivery)


class TestWebhookNotifier:

    @pytest.mark.asyncio
    async def test_posts_notification(self):
        from channels.notifications import WebhookNotifier
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        notifier = WebhookNotifier(NotificationConfig(webhook_url="https://hooks.example.com/agents"))
        notifier._client = _mock_client(handler)

        await notifier.notify_agent("a1", "require_response", "Ticket requires a response", "body")

        assert bodies == [{
            "user_id": "a1", "event_type": "require_response",
            "title": "Ticket requires a response", "body": "body",
        }]
        await notifier.close()

    @pytest.mark.asyncio
    async def test_notify_safely_swallows_gateway_errors(self):
        from channels.notifications import WebhookNotifier
        from core.collaborators import notify_safely

        class NoRetryNotifier(WebhookNotifier):
            async def notify_agent(self, user_id, event_type, title, body):
                client = await self._get_client()
                resp = await client.post(self.config.webhook_url, json={})
                resp.raise_for_status()

        notifier = NoRetryNotifier(NotificationConfig(webhook_url="https://hooks.example.com/agents"))
        notifier._client = _mock_client(lambda request: httpx.Response(500))

        assert await notify_safely(notifier, "a1", "escalation", "t", "b") is False
        await notifier.close()

    @pytest.mark.asyncio
    async def test_close_releases_http_client(self):
        from channels.notifications import WebhookNotifier
        from core.collaborators import LoggingNotifier
        notifier = WebhookNotifier(NotificationConfig(webhook_url="https://hooks.example.com/agents"))
        notifier._client = _mock_client(lambda request: httpx.Response(204))

        await notifier.close()

        assert notifier._client is None
        await LoggingNotifier().close()

    def test_factory(self):
        from channels.notifications import WebhookNotifier, create_notifier
        from core.collaborators import LoggingNotifier
        assert isinstance(create_notifier(NotificationConfig()), LoggingNotifier)
        assert isinstance(create_notifier(NotificationConfig(webhook_url="https://x")), WebhookNotifier)


class TestSafeWrappers:

    @pytest.mark.asyncio
    async def test_notify_safely_forwards_arguments(self):
        from unittest.mock import AsyncMock
        from core.collaborators import Notifier, notify_safely
        notifier = AsyncMock(spec=Notifier)

        assert await notify_safely(notifier, "a1", "escalation", "Escalated", "body") is True
        notifier.notify_agent.assert_awaited_once_with("a1", "escalation", "Escalated", "body")

    @pytest.mark.asyncio
    async def test_publish_safely_reports_failure(self):
        from unittest.mock import AsyncMock
        from core.collaborators import EventSink, publish_safely
        sink = AsyncMock(spec=EventSink)
        sink.publish.side_effect = ConnectionError("broker unreachable")

        assert await publish_safely(sink, "message_created", {"id": "m1"}) is False
        sink.publish.assert_awaited_once()
