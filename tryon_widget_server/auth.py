"""
Widget authentication dependencies.

Routes receive an explicit ``AuthContext`` instead of reading merchant state
off the request. The dependency runs, in order: key authentication (with the
domain check for live keys), the per-merchant rate limit, the per-IP rate
limit, and the lazy monthly quota reset.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from tryon_widget_server.domain import Merchant
from tryon_widget_server.errors import AuthenticationError, RateLimitExceededError
from tryon_widget_server.logging_config import bind_merchant
from tryon_widget_server.rate_limiting import (
    RateLimiter,
    RateLimitResult,
    get_client_ip,
    most_restrictive,
)

MERCHANT_KEY_HEADER = "X-Merchant-Key"

# API Key header scheme; missing keys are reported as MISSING_MERCHANT_KEY
merchant_key_header = APIKeyHeader(name=MERCHANT_KEY_HEADER, auto_error=False)


@dataclass
class AuthContext:
    """Who is calling, as established by ``require_merchant``"""
    merchant: Merchant
    is_test_mode: bool
    client_ip: str
    origin_domain: Optional[str] = None


def get_services(request: Request):
    return request.app.state.services


def request_origin(request: Request) -> Optional[str]:
    """Origin header, falling back to Referer"""
    return request.headers.get("origin") or request.headers.get("referer")


def _apply_limit(request: Request, limiter: RateLimiter, subject_id: str, **log_context) -> RateLimitResult:
    try:
        return limiter.enforce(subject_id, path=request.url.path, **log_context)
    except RateLimitExceededError:
        get_services(request).metrics.increment_rate_limit_rejections()
        raise


def _remember_headers(request: Request, *results: Optional[RateLimitResult]) -> None:
    """Stash the tightest limit so the middleware can add X-RateLimit-* headers"""
    result = most_restrictive(*results)
    if result is not None:
        request.state.rate_limit_headers = result.headers()


def enforce_ip_limit(request: Request) -> RateLimitResult:
    services = get_services(request)
    client_ip = get_client_ip(request, services.settings.trusted_proxies)
    return _apply_limit(request, services.rate_limits.ip, client_ip)


async def require_merchant(
    request: Request,
    api_key: Optional[str] = Security(merchant_key_header),
) -> AuthContext:
    """
    FastAPI dependency to require and validate a merchant key

    Usage:
        @router.get("/endpoint")
        async def endpoint(auth: AuthContext = Depends(require_merchant)):
            ...
    """
    services = get_services(request)
    if not api_key:
        raise AuthenticationError("MISSING_MERCHANT_KEY")

    auth = await services.credentials.authenticate(api_key, request_origin(request))
    bind_merchant(auth.merchant.id, auth.is_test_mode)
    client_ip = get_client_ip(request, services.settings.trusted_proxies)

    merchant_result = _apply_limit(
        request, services.rate_limits.merchant, str(auth.merchant.id),
    )
    ip_result = _apply_limit(
        request, services.rate_limits.ip, client_ip, merchant_id=auth.merchant.id,
    )
    _remember_headers(request, merchant_result, ip_result)

    merchant = await services.quota.reset_if_due(auth.merchant)
    return AuthContext(
        merchant=merchant,
        is_test_mode=auth.is_test_mode,
        client_ip=client_ip,
        origin_domain=auth.origin_domain,
    )


async def optional_merchant(
    request: Request,
    api_key: Optional[str] = Security(merchant_key_header),
) -> Optional[AuthContext]:
    """
    Authenticate when a key is present; otherwise apply only the IP limit.

    Used by the shopper-facing result and poll endpoints, which the widget
    iframe may call without the merchant key.
    """
    if api_key:
        return await require_merchant(request, api_key)
    ip_result = enforce_ip_limit(request)
    _remember_headers(request, ip_result)
    return None
