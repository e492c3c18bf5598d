"""
Core records of the widget service: merchants, product snapshots and widget
sessions.

Records are plain dataclasses. Stores hand out copies, so mutating a record
returned by a store has no effect on shared state; changes go through the
owning service (``QuotaAccountant`` for quota fields, ``SessionManager`` for
session state).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


LIVE_KEY_PREFIX = "mk_live_"
TEST_KEY_PREFIX = "mk_test_"
WEBHOOK_SECRET_PREFIX = "whsec_"
SESSION_ID_PREFIX = "ses_"


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (some databases drop tzinfo)"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class MerchantStatus(str, Enum):
    """Merchant account status"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class Plan(str, Enum):
    """Subscription tiers"""
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Monthly try-on quota per plan (None = unlimited)
PLAN_MONTHLY_QUOTAS: Dict[Plan, Optional[int]] = {
    Plan.FREE: 100,
    Plan.STARTER: 500,
    Plan.GROWTH: 1000,
    Plan.PRO: 2000,
    Plan.ENTERPRISE: None,
}


class SessionStatus(str, Enum):
    """Widget session status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED)


class ProductCategory(str, Enum):
    """Garment categories understood by the image generator"""
    TOP = "top"
    BOTTOM = "bottom"
    DRESS = "dress"
    JACKET = "jacket"
    OUTERWEAR = "outerwear"
    SHOES = "shoes"
    ACCESSORY = "accessory"


@dataclass
class Merchant:
    """A tenant integrating the try-on widget"""
    id: int
    email: str
    business_name: str
    live_key: str
    test_key: str
    allowed_domains: List[str] = field(default_factory=list)
    plan: Plan = Plan.FREE
    monthly_quota: Optional[int] = 100
    quota_used: int = 0
    quota_reset_at: Optional[datetime] = None
    status: MerchantStatus = MerchantStatus.ACTIVE
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == MerchantStatus.ACTIVE

    def to_public_dict(self) -> Dict[str, Any]:
        """Merchant fields safe to return to API clients (no secrets)"""
        return {
            "id": self.id,
            "email": self.email,
            "businessName": self.business_name,
            "plan": self.plan.value,
            "status": self.status.value,
            "allowedDomains": list(self.allowed_domains),
            "monthlyQuota": self.monthly_quota,
            "quotaUsed": self.quota_used,
            "quotaResetAt": _isoformat(self.quota_reset_at),
            "webhookUrl": self.webhook_url,
        }


@dataclass(frozen=True)
class ProductSnapshot:
    """Copy of the merchant's product taken when the session is created"""
    id: str
    name: str
    image: str
    category: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "category": self.category,
            "price": self.price,
            "currency": self.currency,
        }


@dataclass
class WidgetSession:
    """A bounded-lifetime try-on interaction for one product"""
    id: str
    merchant_id: int
    product: ProductSnapshot
    expires_at: datetime
    status: SessionStatus = SessionStatus.PENDING
    try_on_count: int = 0
    max_try_ons: int = 3
    result_image: Optional[str] = None
    processing_time_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    external_user_id: Optional[str] = None
    callback_url: Optional[str] = None
    origin_domain: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Expiry is computed from expires_at, whatever the stored status"""
        if self.status == SessionStatus.EXPIRED:
            return True
        return (now or utcnow()) > self.expires_at

    def effective_status(self, now: Optional[datetime] = None) -> SessionStatus:
        if self.is_expired(now):
            return SessionStatus.EXPIRED
        return self.status

    @property
    def remaining_try_ons(self) -> int:
        return max(0, self.max_try_ons - self.try_on_count)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Convert session to its API representation"""
        return {
            "id": self.id,
            "status": self.effective_status(now).value,
            "tryOnCount": self.try_on_count,
            "maxTryOns": self.max_try_ons,
            "remainingTryOns": self.remaining_try_ons,
            "product": self.product.to_dict(),
            "user": {"id": self.external_user_id} if self.external_user_id else None,
            "result": {
                "imageUrl": self.result_image,
                "processingTime": self.processing_time_ms,
            } if self.result_image else None,
            "error": {
                "code": self.error_code,
                "message": self.error_message,
            } if self.error_code else None,
            "createdAt": _isoformat(self.created_at),
            "completedAt": _isoformat(self.completed_at),
            "expiresAt": _isoformat(self.expires_at),
        }
