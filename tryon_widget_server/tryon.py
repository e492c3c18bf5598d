"""
Try-on orchestration.

Runs one try-on attempt end to end: admission, quota, photo validation, the
atomic claim, the bounded external generation call, and the bookkeeping that
follows. Quota is charged exactly once per successful attempt and never for a
failed or timed-out one.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tryon_widget_server.domain import Merchant, WidgetSession
from tryon_widget_server.errors import ProcessingError, QuotaExceededError, SessionError, WidgetError
from tryon_widget_server.image_service import (
    GenerationError,
    ImageGenerationClient,
    UserPhoto,
    load_user_photo,
)
from tryon_widget_server.logging_config import get_logger, log_try_on_end, log_try_on_start
from tryon_widget_server.quota import QuotaAccountant
from tryon_widget_server.sessions import SessionManager
from tryon_widget_server.webhooks import WebhookEvent, WebhookNotifier

logger = get_logger(__name__)


@dataclass
class PhotoInput:
    """Shopper photo as submitted: inline base64/data URL or a URL to fetch"""
    photo: Optional[str] = None
    photo_url: Optional[str] = None


@dataclass
class TryOnOutcome:
    """A successful try-on"""
    session: WidgetSession
    result_image: str
    processing_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session.id,
            "status": self.session.status.value,
            "resultImageUrl": self.result_image,
            "processingTime": self.processing_time_ms,
            "tryOnCount": self.session.try_on_count,
            "remainingTryOns": self.session.remaining_try_ons,
        }


class TryOnOrchestrator:
    """Coordinates sessions, quota, the image generator and webhooks"""

    def __init__(
        self,
        sessions: SessionManager,
        quota: QuotaAccountant,
        generator: ImageGenerationClient,
        webhooks: WebhookNotifier,
        generation_timeout: float = 60.0,
        max_photo_bytes: int = 10 * 1024 * 1024,
        photo_fetch_timeout: float = 15.0,
        metrics=None,
    ):
        self.sessions = sessions
        self.quota = quota
        self.generator = generator
        self.webhooks = webhooks
        self.generation_timeout = generation_timeout
        self.max_photo_bytes = max_photo_bytes
        self.photo_fetch_timeout = photo_fetch_timeout
        self.metrics = metrics

    async def process_try_on(
        self,
        merchant: Merchant,
        session_id: str,
        photo: PhotoInput,
    ) -> TryOnOutcome:
        """
        Run one try-on attempt.

        Every check before the claim is read-only, so a rejected request
        leaves the session and quota untouched.

        Raises:
            WidgetError: SESSION_NOT_FOUND, ACCESS_DENIED, SESSION_EXPIRED,
                TRY_ON_LIMIT_REACHED, SESSION_PROCESSING, QUOTA_EXCEEDED,
                MISSING_PHOTO, INVALID_USER_IMAGE, IMAGE_TOO_LARGE or
                PROCESSING_FAILED
        """
        session = await self.sessions.get_owned_session(session_id, merchant.id)
        self.sessions.check_admission(session)
        try:
            self.quota.ensure_quota(merchant)
        except QuotaExceededError:
            if self.metrics:
                self.metrics.increment_quota_rejections()
            raise

        user_photo = await load_user_photo(
            photo.photo,
            photo.photo_url,
            max_bytes=self.max_photo_bytes,
            timeout=self.photo_fetch_timeout,
        )

        session = await self.sessions.begin_try_on(session_id)
        try:
            return await self._run_claimed(merchant, session, user_photo)
        except WidgetError:
            raise
        except BaseException as e:
            # Includes cancellation; the claim must not outlive the request
            await self._release_claim(merchant, session_id, e)
            raise

    async def _run_claimed(self, merchant: Merchant, session: WidgetSession, user_photo: UserPhoto) -> TryOnOutcome:
        session_id = session.id
        attempt = session.try_on_count + 1
        log_try_on_start(session_id, merchant.id, attempt, photo_bytes=user_photo.size)
        self.webhooks.notify(merchant, WebhookEvent.TRY_ON_PROCESSING, session)

        start = time.monotonic()
        try:
            result_image = await self._generate(session, user_photo)
        except ProcessingError as e:
            duration_ms = (time.monotonic() - start) * 1000
            await self._fail(merchant, session, e.message, duration_ms)
            raise

        processing_time_ms = int((time.monotonic() - start) * 1000)
        updated = await self.sessions.record_success(session_id, result_image, processing_time_ms)
        if updated is None:
            # Session was expired or deleted while the generator ran
            log_try_on_end(
                session_id, merchant.id, processing_time_ms,
                success=False, error="session expired during processing",
            )
            raise SessionError("SESSION_EXPIRED", "Session expired while the try-on was processing")

        await self.quota.increment(merchant.id)
        log_try_on_end(session_id, merchant.id, processing_time_ms, success=True, status=updated.status.value)
        if self.metrics:
            self.metrics.increment_try_ons(success=True, duration_ms=processing_time_ms)

        self.webhooks.notify(
            merchant,
            WebhookEvent.TRY_ON_COMPLETED,
            updated,
            result={"imageUrl": result_image, "processingTime": processing_time_ms},
        )
        return TryOnOutcome(
            session=updated,
            result_image=result_image,
            processing_time_ms=processing_time_ms,
        )

    async def _generate(self, session: WidgetSession, photo: UserPhoto) -> str:
        """Call the generator under a timeout; every failure becomes PROCESSING_FAILED"""
        try:
            result = await asyncio.wait_for(
                self.generator.generate(photo, session.product),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError:
            raise ProcessingError(message=f"Image generation timed out after {self.generation_timeout}s")
        except GenerationError as e:
            raise ProcessingError(message=str(e))
        except Exception as e:
            logger.error("generator_crashed", session_id=session.id, error=str(e), exc_info=e)
            raise ProcessingError(message=f"Image generation failed: {type(e).__name__}")

        if not result.success or not result.image_url:
            raise ProcessingError(message=result.error or "Image generation failed")
        return result.image_url

    async def _fail(self, merchant: Merchant, session: WidgetSession, message: str, duration_ms: float):
        failed = await self.sessions.record_failure(session.id, "PROCESSING_FAILED", message)
        log_try_on_end(session.id, merchant.id, duration_ms, success=False, error=message)
        if self.metrics:
            self.metrics.increment_try_ons(success=False, duration_ms=duration_ms)
        self.webhooks.notify(
            merchant,
            WebhookEvent.TRY_ON_FAILED,
            failed or session,
            error={"code": "PROCESSING_FAILED", "message": message},
        )

    async def _release_claim(self, merchant: Merchant, session_id: str, error: BaseException):
        """Fail a session left in processing by an unexpected error"""
        message = f"Try-on interrupted: {type(error).__name__}"
        logger.error("try_on_interrupted", session_id=session_id, merchant_id=merchant.id, error=str(error))
        try:
            failed = await self.sessions.record_failure(session_id, "INTERNAL_ERROR", message)
        except Exception as e:
            logger.error("try_on_release_failed", session_id=session_id, error=str(e))
            return
        if failed is not None and self.metrics:
            self.metrics.increment_try_ons(success=False)
