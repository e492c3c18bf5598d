"""
Health check and monitoring endpoints.

/health is a liveness check with no dependencies. /ready checks the session
store, the rate limit counter backend and the image generator configuration.
/metrics exposes the in-process counters kept by ``Metrics``.
"""
import asyncio
import time
from collections import Counter
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tryon_widget_server.domain import utcnow
from tryon_widget_server.logging_config import get_logger

logger = get_logger("health")

router = APIRouter(prefix="/api/v1", tags=["health"])

SERVICE_NAME = "tryon-widget"


class Metrics:
    """In-process counters for one worker; reset on restart"""

    def __init__(self):
        self.start_time = time.time()
        self.request_count = 0
        self.sessions_created = 0
        self.try_on_success = 0
        self.try_on_failure = 0
        self.last_try_on_duration_ms = 0.0
        self._try_on_duration_total_ms = 0.0
        self.rejections: Counter = Counter()

    @property
    def try_on_count(self) -> int:
        return self.try_on_success + self.try_on_failure

    @property
    def quota_rejections(self) -> int:
        return self.rejections["QUOTA_EXCEEDED"]

    @property
    def rate_limit_rejections(self) -> int:
        return self.rejections["RATE_LIMIT_EXCEEDED"]

    def increment_requests(self):
        self.request_count += 1

    def increment_sessions(self):
        self.sessions_created += 1

    def increment_try_ons(self, success: bool, duration_ms: float = 0.0):
        if success:
            self.try_on_success += 1
        else:
            self.try_on_failure += 1
        self.last_try_on_duration_ms = duration_ms
        self._try_on_duration_total_ms += duration_ms

    def increment_quota_rejections(self):
        self.rejections["QUOTA_EXCEEDED"] += 1

    def increment_rate_limit_rejections(self):
        self.rejections["RATE_LIMIT_EXCEEDED"] += 1

    def to_dict(self) -> Dict[str, Any]:
        uptime = time.time() - self.start_time
        attempts = self.try_on_count
        return {
            "uptime_seconds": round(uptime, 2),
            "uptime_human": self._format_uptime(uptime),
            "requests": {
                "total": self.request_count,
                "rate_per_second": round(self.request_count / uptime, 2) if uptime > 0 else 0,
                "rate_limited": self.rate_limit_rejections,
            },
            "sessions": {"created": self.sessions_created},
            "try_ons": {
                "total": attempts,
                "success": self.try_on_success,
                "failure": self.try_on_failure,
                "success_rate": round(self.try_on_success / attempts * 100, 2) if attempts else 0,
                "quota_rejections": self.quota_rejections,
                "last_duration_ms": round(self.last_try_on_duration_ms, 2),
                "avg_duration_ms": round(self._try_on_duration_total_ms / attempts, 2) if attempts else 0,
            },
            "rejections": dict(self.rejections),
        }

    @staticmethod
    def _format_uptime(seconds: float) -> str:
        """e.g. '1d 1h 1m 1s', leading zero units omitted"""
        units = [
            ("d", int(seconds // 86400)),
            ("h", int(seconds % 86400 // 3600)),
            ("m", int(seconds % 3600 // 60)),
        ]
        while units and units[0][1] == 0:
            units.pop(0)
        parts = [f"{value}{unit}" for unit, value in units]
        parts.append(f"{int(seconds % 60)}s")
        return " ".join(parts)


async def check_storage(services) -> Dict[str, Any]:
    """Ping the merchant/session store"""
    start = time.time()
    try:
        await services.storage.ping()
    except Exception as e:
        logger.error("storage_check_failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy",
        "backend": type(services.storage).__name__,
        "response_time_ms": round((time.time() - start) * 1000, 2),
    }


async def check_rate_limit_storage(services) -> Dict[str, Any]:
    if not services.settings.rate_limit_enabled:
        return {"status": "disabled"}
    try:
        healthy = services.rate_limits.storage.check()
    except Exception as e:
        logger.error("rate_limit_storage_check_failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "uri": services.settings.rate_limit_storage_uri.split("@")[-1],
    }


async def check_image_generator(services) -> Dict[str, Any]:
    """Configuration only; the generator is not called from a health check"""
    if not services.generator.url:
        return {"status": "disabled", "message": "IMAGE_GENERATION_URL is not set; try-ons will fail"}
    return {"status": "healthy", "timeout_seconds": services.generator.timeout}


READINESS_CHECKS = {
    "storage": check_storage,
    "rate_limit_storage": check_rate_limit_storage,
    "image_generator": check_image_generator,
}


@router.get("/health")
async def health_check():
    """Liveness check"""
    return {"status": "healthy", "timestamp": utcnow().isoformat(), "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check.
    Returns 503 unless every check is healthy or disabled.
    """
    services = request.app.state.services
    results = await asyncio.gather(
        *(check(services) for check in READINESS_CHECKS.values()),
        return_exceptions=True,
    )
    checks = {}
    for name, result in zip(READINESS_CHECKS, results):
        if isinstance(result, Exception):
            result = {"status": "error", "error": str(result)}
        checks[name] = result

    is_ready = all(check["status"] in ("healthy", "disabled") for check in checks.values())
    if not is_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(
        content={"ready": is_ready, "timestamp": utcnow().isoformat(), "checks": checks},
        status_code=200 if is_ready else 503,
    )


@router.get("/metrics")
async def get_metrics(request: Request):
    services = request.app.state.services
    data = services.metrics.to_dict()
    data["webhooks"] = {
        "scheduled": services.webhooks.scheduled,
        "in_flight": services.webhooks.pending,
    }
    return {"timestamp": utcnow().isoformat(), "metrics": data}


@router.get("/version")
async def get_version(request: Request):
    """Version, environment and enabled features"""
    settings = request.app.state.services.settings
    return {
        "service": SERVICE_NAME,
        "version": settings.app_version,
        "timestamp": utcnow().isoformat(),
        "environment": settings.environment,
        "debug": settings.debug,
        "features": {
            "database": bool(settings.database_url),
            "rate_limiting": settings.rate_limit_enabled,
            "webhooks": settings.webhooks_enabled,
            "image_generation": bool(settings.image_generation_url),
            "completion_policy": settings.session_completion_policy,
        },
    }
