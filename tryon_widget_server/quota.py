"""
Monthly try-on quota accounting.

The accountant is the only writer of ``quota_used`` and ``quota_reset_at``.
Quotas reset lazily: the auth dependency calls ``reset_if_due`` on every
authenticated request, and the reset is a compare-and-set on the previous
reset date so concurrent requests reset at most once.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tryon_widget_server.domain import Merchant, ensure_utc, utcnow
from tryon_widget_server.errors import QuotaExceededError
from tryon_widget_server.logging_config import get_logger
from tryon_widget_server.storage import Storage

logger = get_logger(__name__)


def next_reset_date(now: Optional[datetime] = None) -> datetime:
    """First instant of the calendar month after ``now`` (UTC)"""
    now = ensure_utc(now or utcnow()).astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class QuotaAccountant:
    """Tracks and enforces per-merchant monthly try-on quotas"""

    def __init__(self, storage: Storage):
        self.storage = storage

    @staticmethod
    def has_quota(merchant: Merchant) -> bool:
        if merchant.monthly_quota is None:
            return True
        return merchant.quota_used < merchant.monthly_quota

    def ensure_quota(self, merchant: Merchant) -> None:
        """Raise QUOTA_EXCEEDED if the merchant has no try-ons left this month"""
        if not self.has_quota(merchant):
            logger.warning(
                "quota_exceeded",
                merchant_id=merchant.id,
                quota_used=merchant.quota_used,
                monthly_quota=merchant.monthly_quota,
            )
            raise QuotaExceededError(
                details={
                    "used": merchant.quota_used,
                    "limit": merchant.monthly_quota,
                    "resetsAt": merchant.quota_reset_at.isoformat() if merchant.quota_reset_at else None,
                }
            )

    async def increment(self, merchant_id: int) -> Optional[Merchant]:
        """Charge one successful try-on"""
        merchant = await self.storage.increment_quota(merchant_id)
        if merchant is None:
            logger.warning("quota_increment_missing_merchant", merchant_id=merchant_id)
        return merchant

    async def reset_if_due(self, merchant: Merchant, now: Optional[datetime] = None) -> Merchant:
        """
        Reset the monthly counter when the reset date has passed.

        Unlimited merchants are never reset. A merchant with a quota but no
        reset date is treated as due, which also initialises the date.

        Returns:
            The merchant as it stands after the (possible) reset
        """
        if merchant.monthly_quota is None:
            return merchant

        now = now or utcnow()
        previous = merchant.quota_reset_at
        if previous is not None and now < previous:
            return merchant

        reset = await self.storage.reset_quota(
            merchant.id,
            next_reset_at=next_reset_date(now),
            expected_reset_at=previous,
        )
        if reset is None:
            # Another request reset it first
            return await self.storage.get_merchant(merchant.id) or merchant

        logger.info(
            "quota_reset",
            merchant_id=merchant.id,
            previous_used=merchant.quota_used,
            next_reset_at=reset.quota_reset_at.isoformat(),
        )
        return reset

    @staticmethod
    def usage(merchant: Merchant) -> Dict[str, Any]:
        """Quota summary for API responses"""
        limit = merchant.monthly_quota
        return {
            "used": merchant.quota_used,
            "limit": limit,
            "remaining": None if limit is None else max(0, limit - merchant.quota_used),
            "unlimited": limit is None,
            "resetsAt": merchant.quota_reset_at.isoformat() if merchant.quota_reset_at else None,
        }
