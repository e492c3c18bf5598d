"""
Service wiring.

Builds the object graph (storage, credential store, limiters, quota,
sessions, generator, webhooks, orchestrator) from settings. The API keeps one
``Services`` instance on ``app.state.services``; tests build their own with
in-memory storage and a fake generator.
"""
from dataclasses import dataclass
from typing import Optional

import httpx

from tryon_widget_server.config import Settings
from tryon_widget_server.health import Metrics
from tryon_widget_server.image_service import ImageGenerationClient
from tryon_widget_server.logging_config import get_logger
from tryon_widget_server.merchants import CredentialStore
from tryon_widget_server.quota import QuotaAccountant
from tryon_widget_server.rate_limiting import WidgetRateLimits
from tryon_widget_server.sessions import SessionManager
from tryon_widget_server.storage import InMemoryStorage, Storage
from tryon_widget_server.tryon import TryOnOrchestrator
from tryon_widget_server.webhooks import WebhookNotifier

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: Storage
    credentials: CredentialStore
    rate_limits: WidgetRateLimits
    quota: QuotaAccountant
    sessions: SessionManager
    generator: ImageGenerationClient
    webhooks: WebhookNotifier
    orchestrator: TryOnOrchestrator
    metrics: Metrics

    async def close(self) -> None:
        await self.webhooks.drain()
        await self.storage.close()


def build_storage(settings: Settings) -> Storage:
    """SQL storage when DATABASE_URL is set, otherwise in-memory"""
    if settings.database_url:
        # Imported here so the in-memory setup does not need a database driver
        from tryon_widget_server.db_models import SqlStorage

        logger.info("storage_selected", backend="sql")
        return SqlStorage(settings.database_url, echo=settings.database_echo)
    logger.info("storage_selected", backend="memory")
    return InMemoryStorage()


def build_services(
    settings: Settings,
    storage: Optional[Storage] = None,
    generator=None,
    webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    storage = storage or build_storage(settings)
    generator = generator or ImageGenerationClient.from_settings(settings)
    metrics = Metrics()

    sessions = SessionManager(
        storage,
        ttl_minutes=settings.session_ttl_minutes,
        default_max_try_ons=settings.default_max_try_ons,
        max_try_ons_limit=settings.max_try_ons_limit,
        completion_policy=settings.session_completion_policy,
    )
    quota = QuotaAccountant(storage)
    webhooks = WebhookNotifier.from_settings(settings, transport=webhook_transport)
    orchestrator = TryOnOrchestrator(
        sessions,
        quota,
        generator,
        webhooks,
        generation_timeout=settings.image_generation_timeout_seconds,
        max_photo_bytes=settings.max_photo_bytes,
        photo_fetch_timeout=settings.photo_fetch_timeout_seconds,
        metrics=metrics,
    )

    return Services(
        settings=settings,
        storage=storage,
        credentials=CredentialStore(storage),
        rate_limits=WidgetRateLimits.from_settings(settings),
        quota=quota,
        sessions=sessions,
        generator=generator,
        webhooks=webhooks,
        orchestrator=orchestrator,
        metrics=metrics,
    )
