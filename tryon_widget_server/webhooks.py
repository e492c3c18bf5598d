"""
Merchant webhook delivery.

Lifecycle events are POSTed to the session callback URL (or the merchant's
configured webhook URL), signed with the merchant's webhook secret:

    X-TryOn-Signature: sha256=<hex HMAC-SHA256 of "{timestamp}.{body}">

Delivery is fire-and-forget: ``notify`` schedules a background task and
returns immediately. Failed deliveries are retried and then logged; they never
affect the request that triggered them.
"""
import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from tryon_widget_server.domain import Merchant, WidgetSession, utcnow
from tryon_widget_server.logging_config import get_logger, log_webhook_delivery

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-TryOn-Signature"
TIMESTAMP_HEADER = "X-TryOn-Timestamp"
EVENT_HEADER = "X-TryOn-Event"
USER_AGENT = "TryOn-Webhook/1.0"


class WebhookEvent(str, Enum):
    """Webhook event types"""
    SESSION_CREATED = "session.created"
    TRY_ON_PROCESSING = "try-on.processing"
    TRY_ON_COMPLETED = "try-on.completed"
    TRY_ON_FAILED = "try-on.failed"


def generate_signature(payload: str, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: str, signature: str, timestamp: int, secret: str) -> bool:
    """Check a received signature (for merchants verifying deliveries)"""
    expected = generate_signature(payload, timestamp, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def build_payload(
    event: WebhookEvent,
    session: WidgetSession,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "event": event.value,
        "timestamp": utcnow().isoformat(),
        "data": {
            "sessionId": session.id,
            "product": session.product.to_dict(),
            "user": {"id": session.external_user_id} if session.external_user_id else None,
            "result": result,
            "error": error,
        },
    }


@dataclass
class DeliveryAttempt:
    attempt_number: int
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    attempts: List[DeliveryAttempt] = field(default_factory=list)


class WebhookNotifier:
    """Signs and delivers webhooks in the background with retries"""

    def __init__(
        self,
        enabled: bool = True,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 5.0),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.enabled = enabled
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delays = list(retry_delays)
        self._transport = transport
        self._background_tasks: set = set()
        self.scheduled = 0

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "WebhookNotifier":
        return cls(
            enabled=settings.webhooks_enabled,
            timeout=settings.webhook_timeout,
            max_attempts=settings.webhook_retry_attempts,
            retry_delays=settings.webhook_retry_delays,
            transport=transport,
        )

    @staticmethod
    def target_url(merchant: Merchant, session: WidgetSession) -> Optional[str]:
        return session.callback_url or merchant.webhook_url

    def notify(
        self,
        merchant: Merchant,
        event: WebhookEvent,
        session: WidgetSession,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Schedule delivery of one event.

        Returns:
            True if a delivery was scheduled, False if there is nowhere to send
            it (webhooks disabled, no URL, or no signing secret)
        """
        if not self.enabled:
            return False
        url = self.target_url(merchant, session)
        if not url:
            return False
        if not merchant.webhook_secret:
            logger.info("webhook_skipped_no_secret", merchant_id=merchant.id, webhook_event=event.value)
            return False

        payload = build_payload(event, session, result=result, error=error)
        task = asyncio.create_task(
            self._deliver_and_log(url, payload, merchant.webhook_secret, session.id)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        self.scheduled += 1
        return True

    async def _deliver_and_log(self, url: str, payload: Dict[str, Any], secret: str, session_id: str):
        try:
            outcome = await self.deliver(url, payload, secret)
        except Exception as e:
            logger.error("webhook_delivery_crashed", url=url, session_id=session_id, error=str(e))
            return
        last_error = outcome.attempts[-1].error if outcome.attempts else None
        log_webhook_delivery(
            event=payload["event"],
            session_id=session_id,
            url=url,
            success=outcome.success,
            attempts=len(outcome.attempts),
            error=None if outcome.success else last_error,
        )

    async def send_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Dict[str, Any],
        secret: str,
        attempt_number: int,
    ) -> DeliveryAttempt:
        timestamp = int(time.time())
        body = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: generate_signature(body, timestamp, secret),
            TIMESTAMP_HEADER: str(timestamp),
            EVENT_HEADER: payload["event"],
            "User-Agent": USER_AGENT,
        }
        try:
            response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            return DeliveryAttempt(attempt_number, success=False, error=str(e) or type(e).__name__)

        success = 200 <= response.status_code < 300
        return DeliveryAttempt(
            attempt_number,
            success=success,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}",
        )

    async def deliver(self, url: str, payload: Dict[str, Any], secret: str) -> DeliveryResult:
        """POST a payload, retrying with the configured delays"""
        attempts: List[DeliveryAttempt] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for i in range(self.max_attempts):
                attempt = await self.send_once(client, url, payload, secret, i + 1)
                attempts.append(attempt)
                if attempt.success:
                    return DeliveryResult(success=True, attempts=attempts)
                if i < self.max_attempts - 1 and i < len(self.retry_delays):
                    await asyncio.sleep(self.retry_delays[i])
        return DeliveryResult(success=False, attempts=attempts)

    @property
    def pending(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
