"""
Tests for merchant webhook delivery

Covers HMAC signing, payload shape, retry behaviour and the fire-and-forget
scheduling used by the try-on flow.
"""

import json

import httpx
import pytest
from tryon_widget_server.domain import WidgetSession, utcnow
from tryon_widget_server.webhooks import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookEvent,
    WebhookNotifier,
    build_payload,
    generate_signature,
    verify_signature,
)


@pytest.fixture
def session(product):
    return WidgetSession(
        id="ses_test123",
        merchant_id=1,
        product=product,
        expires_at=utcnow(),
        external_user_id="shopper-42",
    )


def _notifier(handler, **kwargs) -> WebhookNotifier:
    kwargs.setdefault("retry_delays", [0, 0])
    return WebhookNotifier(transport=httpx.MockTransport(handler), **kwargs)


class TestSignatures:
    """Test HMAC signing"""

    def test_signature_format(self):
        """Test sha256= prefix and hex digest"""
        signature = generate_signature('{"a": 1}', 1700000000, "whsec_abc")

        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    def test_verify_round_trip(self):
        """Test that a generated signature verifies"""
        body = '{"event": "try-on.completed"}'
        signature = generate_signature(body, 1700000000, "whsec_abc")

        assert verify_signature(body, signature, 1700000000, "whsec_abc")

    def test_verify_detects_tampering(self):
        """Test body, timestamp and secret are all bound"""
        body = '{"event": "try-on.completed"}'
        signature = generate_signature(body, 1700000000, "whsec_abc")

        assert not verify_signature(body + " ", signature, 1700000000, "whsec_abc")
        assert not verify_signature(body, signature, 1700000001, "whsec_abc")
        assert not verify_signature(body, signature, 1700000000, "whsec_other")


class TestPayload:
    """Test webhook payload"""

    def test_payload_shape(self, session):
        """Test event envelope"""
        payload = build_payload(
            WebhookEvent.TRY_ON_COMPLETED,
            session,
            result={"imageUrl": "https://cdn/r.jpg", "processingTime": 1500},
        )

        assert payload["event"] == "try-on.completed"
        assert payload["timestamp"]
        assert payload["data"]["sessionId"] == "ses_test123"
        assert payload["data"]["user"] == {"id": "shopper-42"}
        assert payload["data"]["product"]["id"] == "sku-123"
        assert payload["data"]["result"]["imageUrl"] == "https://cdn/r.jpg"
        assert payload["data"]["error"] is None


class TestDelivery:
    """Test delivery and retries"""

    @pytest.mark.asyncio
    async def test_successful_delivery_signed(self, session):
        """Test headers on a delivered webhook"""
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(200)

        notifier = _notifier(handler)
        payload = build_payload(WebhookEvent.SESSION_CREATED, session)

        result = await notifier.deliver("https://hooks.example.com/tryon", payload, "whsec_abc")

        assert result.success is True
        assert len(result.attempts) == 1
        request = received[0]
        body = request.content.decode()
        assert json.loads(body)["event"] == "session.created"
        assert request.headers[EVENT_HEADER] == "session.created"
        assert verify_signature(
            body,
            request.headers[SIGNATURE_HEADER],
            int(request.headers[TIMESTAMP_HEADER]),
            "whsec_abc",
        )

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, session):
        """Test a 500 is retried"""
        statuses = iter([500, 503, 200])

        def handler(request):
            return httpx.Response(next(statuses))

        notifier = _notifier(handler)
        result = await notifier.deliver("https://hooks.example.com", build_payload(WebhookEvent.SESSION_CREATED, session), "s")

        assert result.success is True
        assert [a.status_code for a in result.attempts] == [500, 503, 200]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session):
        """Test delivery stops after max_attempts"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        notifier = _notifier(handler, max_attempts=3)
        result = await notifier.deliver("https://hooks.example.com", build_payload(WebhookEvent.SESSION_CREATED, session), "s")

        assert result.success is False
        assert len(calls) == 3
        assert result.attempts[-1].error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_connection_error_recorded(self, session):
        """Test transport errors count as failed attempts"""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = _notifier(handler, max_attempts=2)
        result = await notifier.deliver("https://hooks.example.com", build_payload(WebhookEvent.SESSION_CREATED, session), "s")

        assert result.success is False
        assert len(result.attempts) == 2
        assert result.attempts[0].status_code is None


class TestNotify:
    """Test fire-and-forget scheduling"""

    @pytest.mark.asyncio
    async def test_notify_uses_session_callback(self, make_merchant, session, webhook_recorder):
        """Test the session callback URL wins over the merchant URL"""
        merchant = await make_merchant(webhook_url="https://merchant.example.com/hook")
        session.callback_url = "https://session.example.com/hook"
        notifier = WebhookNotifier(retry_delays=[0], transport=webhook_recorder.transport)

        assert notifier.notify(merchant, WebhookEvent.SESSION_CREATED, session) is True
        await notifier.drain()

        assert str(webhook_recorder.requests[0].url) == "https://session.example.com/hook"
        assert notifier.scheduled == 1
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_notify_falls_back_to_merchant_url(self, make_merchant, session, webhook_recorder):
        """Test the merchant webhook URL is used without a callback"""
        merchant = await make_merchant(webhook_url="https://merchant.example.com/hook")
        notifier = WebhookNotifier(transport=webhook_recorder.transport)

        notifier.notify(merchant, WebhookEvent.TRY_ON_PROCESSING, session)
        await notifier.drain()

        assert str(webhook_recorder.requests[0].url) == "https://merchant.example.com/hook"
        assert webhook_recorder.events == ["try-on.processing"]

    @pytest.mark.asyncio
    async def test_notify_without_url(self, make_merchant, session, webhook_recorder):
        """Test nothing is scheduled without a destination"""
        merchant = await make_merchant(webhook_url=None)
        notifier = WebhookNotifier(transport=webhook_recorder.transport)

        assert notifier.notify(merchant, WebhookEvent.SESSION_CREATED, session) is False
        assert notifier.scheduled == 0

    @pytest.mark.asyncio
    async def test_notify_without_secret(self, make_merchant, session, webhook_recorder):
        """Test unsigned deliveries are never sent"""
        merchant = await make_merchant(webhook_secret=None)
        notifier = WebhookNotifier(transport=webhook_recorder.transport)

        assert notifier.notify(merchant, WebhookEvent.SESSION_CREATED, session) is False

    @pytest.mark.asyncio
    async def test_notify_disabled(self, make_merchant, session, webhook_recorder):
        """Test webhooks can be switched off"""
        merchant = await make_merchant()
        notifier = WebhookNotifier(enabled=False, transport=webhook_recorder.transport)

        assert notifier.notify(merchant, WebhookEvent.SESSION_CREATED, session) is False

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_raise(self, make_merchant, session):
        """Test delivery failures are only logged"""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        merchant = await make_merchant()
        notifier = _notifier(handler, max_attempts=2)

        notifier.notify(merchant, WebhookEvent.TRY_ON_FAILED, session, error={"code": "PROCESSING_FAILED"})
        await notifier.drain()

        assert notifier.pending == 0

    def test_from_settings(self, test_settings):
        """Test settings wiring"""
        notifier = WebhookNotifier.from_settings(test_settings)

        assert notifier.enabled is True
        assert notifier.max_attempts == 3
        assert notifier.retry_delays == [0.0, 0.0]
