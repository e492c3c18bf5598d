"""
Widget Session Management

This module owns the widget session state machine:

    pending -> processing -> pending | completed | failed
    any non-terminal -> expired (TTL or explicit DELETE)

Features:
- Session creation with product snapshot, try-on ceiling and TTL
- Expiry computed on read, so a stale stored status is never reported
- Admission checks before a try-on starts
- Atomic pending -> processing claim (compare-and-set at the storage layer)
- Configurable completion policy ("limit" or "single_shot")
- Periodic sweep of overdue pending sessions
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional

from tryon_widget_server.domain import (
    SESSION_ID_PREFIX,
    Merchant,
    ProductSnapshot,
    SessionStatus,
    WidgetSession,
    utcnow,
)
from tryon_widget_server.errors import SessionError, ValidationError
from tryon_widget_server.storage import Storage

logger = logging.getLogger(__name__)

COMPLETION_POLICIES = ("limit", "single_shot")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_session_id() -> str:
    """Generate a unique session ID: ses_ + base36 millisecond timestamp + random"""
    timestamp = _to_base36(int(time.time() * 1000))
    return f"{SESSION_ID_PREFIX}{timestamp}{secrets.token_urlsafe(12)}"


class SessionManager:
    """Creates widget sessions and drives their state transitions"""

    def __init__(
        self,
        storage: Storage,
        ttl_minutes: int = 30,
        default_max_try_ons: int = 3,
        max_try_ons_limit: int = 10,
        completion_policy: str = "limit",
    ):
        if completion_policy not in COMPLETION_POLICIES:
            raise ValueError(f"completion_policy must be one of: {COMPLETION_POLICIES}")
        self.storage = storage
        self.ttl_minutes = ttl_minutes
        self.default_max_try_ons = default_max_try_ons
        self.max_try_ons_limit = max_try_ons_limit
        self.completion_policy = completion_policy

    async def create_session(
        self,
        merchant: Merchant,
        product: ProductSnapshot,
        max_try_ons: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        external_user_id: Optional[str] = None,
        callback_url: Optional[str] = None,
        origin_domain: Optional[str] = None,
    ) -> WidgetSession:
        """Create a pending session for one product"""
        if max_try_ons is None:
            max_try_ons = self.default_max_try_ons
        if not 1 <= max_try_ons <= self.max_try_ons_limit:
            raise ValidationError(
                message=f"maxTryOns must be between 1 and {self.max_try_ons_limit}"
            )

        now = utcnow()
        session = WidgetSession(
            id=generate_session_id(),
            merchant_id=merchant.id,
            product=product,
            status=SessionStatus.PENDING,
            max_try_ons=max_try_ons,
            external_user_id=external_user_id,
            callback_url=callback_url,
            origin_domain=origin_domain,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes or self.ttl_minutes),
        )
        session = await self.storage.add_session(session)
        logger.info(f"Created session {session.id} for merchant {merchant.id} (product {product.id})")
        return session

    async def get_session(self, session_id: str) -> WidgetSession:
        """Get a session; its status reflects expiry at the time of the read"""
        session = await self.storage.get_session(session_id)
        if not session:
            raise SessionError("SESSION_NOT_FOUND")
        now = utcnow()
        if session.is_expired(now):
            session.status = SessionStatus.EXPIRED
        return session

    async def get_owned_session(self, session_id: str, merchant_id: int) -> WidgetSession:
        """Get a session belonging to ``merchant_id``"""
        session = await self.get_session(session_id)
        if session.merchant_id != merchant_id:
            raise SessionError("ACCESS_DENIED", "Session belongs to another merchant")
        return session

    @staticmethod
    def check_admission(session: WidgetSession, now: Optional[datetime] = None) -> None:
        """
        Check that a session can accept a try-on. Read-only.

        Raises:
            SessionError: SESSION_EXPIRED, TRY_ON_LIMIT_REACHED,
                SESSION_PROCESSING, SESSION_ALREADY_COMPLETED or
                INVALID_SESSION_STATE, checked in that order
        """
        if session.is_expired(now):
            raise SessionError("SESSION_EXPIRED")
        if session.try_on_count >= session.max_try_ons:
            raise SessionError("TRY_ON_LIMIT_REACHED")
        if session.status == SessionStatus.PROCESSING:
            raise SessionError("SESSION_PROCESSING")
        if session.status == SessionStatus.COMPLETED:
            raise SessionError("SESSION_ALREADY_COMPLETED")
        if session.status != SessionStatus.PENDING:
            raise SessionError("INVALID_SESSION_STATE")

    async def begin_try_on(self, session_id: str) -> WidgetSession:
        """
        Claim a session for processing.

        Only one concurrent caller can move a given session from pending to
        processing; the others see SESSION_PROCESSING (or whatever state the
        winner left behind).
        """
        session = await self.get_session(session_id)
        self.check_admission(session)

        claimed = await self.storage.update_session(
            session_id,
            expected_status=SessionStatus.PENDING,
            expected_try_on_count=session.try_on_count,
            status=SessionStatus.PROCESSING,
            error_code=None,
            error_message=None,
        )
        if claimed is None:
            current = await self.get_session(session_id)
            self.check_admission(current)
            # State moved between read and claim but looks admissible again
            raise SessionError("SESSION_PROCESSING")

        logger.info(f"Session {session_id} processing attempt {claimed.try_on_count + 1}")
        return claimed

    def _status_after_success(self, try_on_count: int, max_try_ons: int) -> SessionStatus:
        if self.completion_policy == "single_shot" or try_on_count >= max_try_ons:
            return SessionStatus.COMPLETED
        return SessionStatus.PENDING

    async def record_success(
        self,
        session_id: str,
        result_image: str,
        processing_time_ms: int,
    ) -> Optional[WidgetSession]:
        """
        Record a successful try-on on a processing session.

        Returns None when the session is no longer processing (deleted or
        expired while the provider was running); the result is then dropped.
        """
        session = await self.storage.get_session(session_id)
        if not session or session.status != SessionStatus.PROCESSING:
            logger.warning(f"Discarding result for session {session_id}: no longer processing")
            return None

        new_count = session.try_on_count + 1
        updated = await self.storage.update_session(
            session_id,
            expected_status=SessionStatus.PROCESSING,
            expected_try_on_count=session.try_on_count,
            status=self._status_after_success(new_count, session.max_try_ons),
            try_on_count=new_count,
            result_image=result_image,
            processing_time_ms=processing_time_ms,
            completed_at=utcnow(),
        )
        if updated is None:
            logger.warning(f"Discarding result for session {session_id}: state changed")
            return None

        logger.info(
            f"Session {session_id} try-on {new_count}/{updated.max_try_ons} succeeded, "
            f"status {updated.status.value}"
        )
        return updated

    async def record_failure(self, session_id: str, code: str, message: str) -> Optional[WidgetSession]:
        """Move a processing session to failed; the try-on count is unchanged"""
        updated = await self.storage.update_session(
            session_id,
            expected_status=SessionStatus.PROCESSING,
            status=SessionStatus.FAILED,
            error_code=code,
            error_message=message,
        )
        if updated is None:
            logger.warning(f"Could not mark session {session_id} failed: no longer processing")
        else:
            logger.info(f"Session {session_id} failed: {code}")
        return updated

    async def expire_session(self, session_id: str) -> WidgetSession:
        """
        Expire a session now. Idempotent: an already expired session is
        returned unchanged.
        """
        while True:
            session = await self.storage.get_session(session_id)
            if not session:
                raise SessionError("SESSION_NOT_FOUND")
            if session.status == SessionStatus.EXPIRED:
                return session

            now = utcnow()
            expired = await self.storage.update_session(
                session_id,
                expected_status=session.status,
                expected_try_on_count=session.try_on_count,
                status=SessionStatus.EXPIRED,
                expires_at=min(now, session.expires_at),
            )
            if expired is not None:
                logger.info(f"Session {session_id} expired on request")
                return expired
            # Lost a race with another transition; re-read and retry

    async def sweep_expired(self) -> int:
        """Mark overdue pending sessions as expired"""
        count = await self.storage.expire_overdue_sessions(utcnow())
        if count:
            logger.info(f"Swept {count} expired sessions")
        return count

    async def run_sweeper(self, interval_seconds: float):
        """Sweep periodically until cancelled"""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Session sweep failed: {str(e)}")
