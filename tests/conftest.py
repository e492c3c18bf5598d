"""Shared test fixtures"""
import asyncio
import base64
import uuid
from typing import Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from tryon_widget_server.config import Settings
from tryon_widget_server.domain import (
    LIVE_KEY_PREFIX,
    TEST_KEY_PREFIX,
    Merchant,
    ProductSnapshot,
)
from tryon_widget_server.image_service import GenerationResult
from tryon_widget_server.merchants import generate_api_key, generate_webhook_secret
from tryon_widget_server.services import build_services
from tryon_widget_server.storage import InMemoryStorage

# Smallest byte strings that pass the image signature check
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32


class FakeGenerator:
    """Stand-in for the image generation service"""

    def __init__(self, image_url: str = "https://cdn.example.com/results/tryon.jpg"):
        self.url = "http://generator.test/generate"
        self.timeout = 5.0
        self.image_url = image_url
        self.result: Optional[GenerationResult] = None
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[tuple] = []

    async def generate(self, photo, product):
        self.calls.append((photo, product))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result or GenerationResult(success=True, image_url=self.image_url)


class WebhookRecorder:
    """Captures webhook POSTs through an httpx mock transport"""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def events(self) -> List[str]:
        return [r.headers["X-TryOn-Event"] for r in self.requests]


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, deterministic tests"""
    return Settings(
        environment="test",
        log_format="console",
        rate_limit_storage_uri="memory://",
        session_sweep_interval_seconds=0,
        image_generation_url="http://generator.test/generate",
        image_generation_timeout_seconds=2.0,
        webhook_retry_delays=[0.0, 0.0],
        poll_interval_seconds=0.01,
        poll_max_duration_seconds=1,
        base_url="https://widget.example.com",
        trusted_proxies=["testclient"],
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def webhook_recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def services(test_settings, storage, generator, webhook_recorder):
    return build_services(
        test_settings,
        storage=storage,
        generator=generator,
        webhook_transport=webhook_recorder.transport,
    )


@pytest.fixture
def make_merchant(storage):
    """Async factory inserting a merchant straight into storage"""
    async def _make(**overrides) -> Merchant:
        unique = uuid.uuid4().hex[:8]
        fields = dict(
            id=0,
            email=f"shop-{unique}@example.com",
            business_name=f"Shop {unique}",
            live_key=generate_api_key(LIVE_KEY_PREFIX),
            test_key=generate_api_key(TEST_KEY_PREFIX),
            allowed_domains=["shop.example.com", "*.example.org"],
            webhook_url="https://hooks.example.com/tryon",
            webhook_secret=generate_webhook_secret(),
        )
        fields.update(overrides)
        return await storage.add_merchant(Merchant(**fields))

    return _make


@pytest.fixture
def product() -> ProductSnapshot:
    return ProductSnapshot(
        id="sku-123",
        name="Linen Shirt",
        image="https://cdn.example.com/products/linen-shirt.jpg",
        category="top",
        price=49.9,
        currency="USD",
    )


@pytest.fixture
def photo_b64() -> str:
    return base64.b64encode(PNG_BYTES).decode("ascii")


@pytest.fixture
def product_payload() -> dict:
    return {
        "product": {
            "id": "sku-123",
            "name": "Linen Shirt",
            "image": "https://cdn.example.com/products/linen-shirt.jpg",
            "category": "top",
            "price": 49.9,
            "currency": "usd",
        },
        "user": {"id": "shopper-42"},
    }


@pytest.fixture
def app(test_settings, services):
    from tryon_widget_server.main_api import create_app
    return create_app(settings=test_settings, services=services)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """TestClient running the app lifespan on a single event loop"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def merchant(make_merchant) -> Merchant:
    """A merchant created before the client starts"""
    return asyncio.run(make_merchant())


@pytest.fixture
def live_headers(merchant) -> dict:
    return {"X-Merchant-Key": merchant.live_key}


@pytest.fixture
def test_headers(merchant) -> dict:
    return {"X-Merchant-Key": merchant.test_key}
