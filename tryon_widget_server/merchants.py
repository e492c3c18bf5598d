"""
Merchant credential store.

Authenticates widget API keys (``mk_live_...`` / ``mk_test_...``) against the
merchant records and enforces the per-merchant domain whitelist for live keys.
Also provides the account administration operations used by the bootstrap CLI:
registration, key rotation and whitelist edits.
"""
import secrets
from dataclasses import dataclass
from typing import Optional

from tryon_widget_server.domain import (
    LIVE_KEY_PREFIX,
    PLAN_MONTHLY_QUOTAS,
    TEST_KEY_PREFIX,
    WEBHOOK_SECRET_PREFIX,
    Merchant,
    MerchantStatus,
    Plan,
)
from tryon_widget_server.domains import (
    extract_domain,
    is_domain_allowed,
    is_valid_domain_pattern,
    normalize_host,
)
from tryon_widget_server.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tryon_widget_server.logging_config import get_logger, mask_secret
from tryon_widget_server.storage import Storage

logger = get_logger(__name__)

KEY_TYPES = ("live", "test", "both")


def generate_api_key(prefix: str) -> str:
    """Generate a merchant key: prefix + 32 url-safe characters"""
    return f"{prefix}{secrets.token_urlsafe(24)}"


def generate_webhook_secret() -> str:
    return f"{WEBHOOK_SECRET_PREFIX}{secrets.token_urlsafe(24)}"


@dataclass
class AuthResult:
    """Outcome of a successful key check"""
    merchant: Merchant
    is_test_mode: bool
    origin_domain: Optional[str] = None


class CredentialStore:
    """Maps API keys to merchants and administers merchant credentials"""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def authenticate(self, api_key: Optional[str], origin: Optional[str] = None) -> AuthResult:
        """
        Resolve an API key to an active merchant.

        Args:
            api_key: Raw ``X-Merchant-Key`` value
            origin: Origin (or Referer) of the request, if any

        Returns:
            AuthResult with the merchant and whether a test key was used

        Raises:
            AuthenticationError: INVALID_MERCHANT_KEY for unknown, malformed or
                inactive keys; DOMAIN_NOT_ALLOWED for a live key used from an
                origin outside the whitelist
        """
        if not api_key:
            raise AuthenticationError("MISSING_MERCHANT_KEY")

        is_live = api_key.startswith(LIVE_KEY_PREFIX)
        is_test = api_key.startswith(TEST_KEY_PREFIX)
        if not (is_live or is_test):
            raise AuthenticationError("INVALID_MERCHANT_KEY", "Invalid API key format")

        merchant = await self.storage.get_merchant_by_api_key(api_key)
        if not merchant:
            logger.info("unknown_api_key", api_key=mask_secret(api_key))
            raise AuthenticationError("INVALID_MERCHANT_KEY")

        # A key with the wrong prefix for its slot is not a match
        if (is_live and merchant.live_key != api_key) or (is_test and merchant.test_key != api_key):
            raise AuthenticationError("INVALID_MERCHANT_KEY")

        if not merchant.is_active:
            logger.info(
                "inactive_merchant_key",
                merchant_id=merchant.id,
                status=merchant.status.value,
            )
            raise AuthenticationError("INVALID_MERCHANT_KEY", "Merchant account is not active")

        origin_domain = extract_domain(origin) if origin else None

        # Test keys skip the whitelist so merchants can develop on localhost
        if is_live and origin:
            if origin_domain is None:
                raise AuthenticationError("DOMAIN_NOT_ALLOWED", "Request origin could not be parsed")
            if not is_domain_allowed(origin_domain, merchant.allowed_domains):
                logger.warning(
                    "domain_not_allowed",
                    merchant_id=merchant.id,
                    origin_domain=origin_domain,
                )
                raise AuthenticationError(
                    "DOMAIN_NOT_ALLOWED",
                    f"Domain {origin_domain} is not allowed for this merchant",
                )

        return AuthResult(merchant=merchant, is_test_mode=is_test, origin_domain=origin_domain)

    async def get_merchant(self, merchant_id: int) -> Merchant:
        merchant = await self.storage.get_merchant(merchant_id)
        if not merchant:
            raise NotFoundError("MERCHANT_NOT_FOUND")
        return merchant

    async def register_merchant(
        self,
        email: str,
        business_name: str,
        plan: Plan = Plan.FREE,
        allowed_domains: Optional[list] = None,
        webhook_url: Optional[str] = None,
    ) -> Merchant:
        """Create a merchant with fresh live/test keys and a webhook secret"""
        email = email.strip().lower()
        if await self.storage.get_merchant_by_email(email):
            raise ConflictError("EMAIL_EXISTS")

        domains = []
        for entry in allowed_domains or []:
            if not is_valid_domain_pattern(entry):
                raise ValidationError("INVALID_DOMAIN_FORMAT", f"Invalid domain: {entry}")
            domain = normalize_host(entry)
            if domain not in domains:
                domains.append(domain)

        merchant = Merchant(
            id=0,
            email=email,
            business_name=business_name,
            live_key=generate_api_key(LIVE_KEY_PREFIX),
            test_key=generate_api_key(TEST_KEY_PREFIX),
            allowed_domains=domains,
            plan=plan,
            monthly_quota=PLAN_MONTHLY_QUOTAS[plan],
            webhook_url=webhook_url,
            webhook_secret=generate_webhook_secret(),
        )
        created = await self.storage.add_merchant(merchant)
        logger.info("merchant_registered", merchant_id=created.id, plan=plan.value)
        return created

    async def regenerate_keys(self, merchant_id: int, key_type: str) -> Merchant:
        """Rotate the live key, the test key, or both"""
        if key_type not in KEY_TYPES:
            raise ValidationError("INVALID_KEY_TYPE")
        changes = {}
        if key_type in ("live", "both"):
            changes["live_key"] = generate_api_key(LIVE_KEY_PREFIX)
        if key_type in ("test", "both"):
            changes["test_key"] = generate_api_key(TEST_KEY_PREFIX)

        merchant = await self.storage.update_merchant(merchant_id, **changes)
        if not merchant:
            raise NotFoundError("MERCHANT_NOT_FOUND")
        logger.info("merchant_keys_regenerated", merchant_id=merchant_id, key_type=key_type)
        return merchant

    async def add_allowed_domain(self, merchant_id: int, domain: str) -> Merchant:
        if not is_valid_domain_pattern(domain):
            raise ValidationError("INVALID_DOMAIN_FORMAT", f"Invalid domain: {domain}")
        merchant = await self.get_merchant(merchant_id)
        domain = normalize_host(domain)
        if domain in merchant.allowed_domains:
            raise ConflictError("DOMAIN_EXISTS")
        updated = await self.storage.update_merchant(
            merchant_id, allowed_domains=merchant.allowed_domains + [domain]
        )
        logger.info("merchant_domain_added", merchant_id=merchant_id, domain=domain)
        return updated

    async def remove_allowed_domain(self, merchant_id: int, domain: str) -> Merchant:
        merchant = await self.get_merchant(merchant_id)
        domain = normalize_host(domain)
        if domain not in merchant.allowed_domains:
            raise NotFoundError("DOMAIN_NOT_FOUND")
        remaining = [d for d in merchant.allowed_domains if d != domain]
        updated = await self.storage.update_merchant(merchant_id, allowed_domains=remaining)
        logger.info("merchant_domain_removed", merchant_id=merchant_id, domain=domain)
        return updated

    async def set_status(self, merchant_id: int, status: MerchantStatus) -> Merchant:
        merchant = await self.storage.update_merchant(merchant_id, status=status)
        if not merchant:
            raise NotFoundError("MERCHANT_NOT_FOUND")
        logger.info("merchant_status_changed", merchant_id=merchant_id, status=status.value)
        return merchant
