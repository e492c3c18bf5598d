import asyncio
import time
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tryon_widget_server.config import Settings, settings as default_settings
from tryon_widget_server.errors import WidgetError, error_envelope
from tryon_widget_server.health import router as health_router
from tryon_widget_server.logging_config import (
    bind_request_context,
    get_logger,
    log_exception,
    log_request_end,
    log_request_start,
    setup_logging,
)
from tryon_widget_server.rate_limiting import get_client_ip
from tryon_widget_server.services import Services, build_services
from tryon_widget_server.widget_api import router as widget_router

# Initialize structured logging
setup_logging(
    log_level=default_settings.log_level,
    log_format=default_settings.log_format,
    log_file=default_settings.log_file_path if default_settings.log_file_enabled else None,
    log_max_bytes=default_settings.log_file_max_size,
    log_backup_count=default_settings.log_file_backup_count,
)

RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"]

logger = get_logger("startup")


def current_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


def validation_error_code(exc: RequestValidationError) -> str:
    """INVALID_PRODUCT_IMAGE when the product image URL is what failed"""
    for error in exc.errors():
        loc = tuple(error.get("loc", ()))
        if loc[-2:] == ("product", "image"):
            return "INVALID_PRODUCT_IMAGE"
    return "VALIDATION_ERROR"


def _validation_details(exc: RequestValidationError):
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI application with its services, middleware and routes"""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.session_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(
                app.state.services.sessions.run_sweeper(settings.session_sweep_interval_seconds)
            )
        logger.info("startup_complete", environment=settings.environment, version=settings.app_version)
        yield
        if sweeper:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await app.state.services.close()

    app = FastAPI(
        title="Try-On Widget API",
        description="Merchant-facing API for embedding the virtual try-on widget.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services or build_services(settings)

    # Configure CORS if enabled
    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[settings.request_id_header] + RATE_LIMIT_HEADERS,
        )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security and rate limit headers to all responses"""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        rate_limit_headers = getattr(request.state, "rate_limit_headers", None)
        if rate_limit_headers:
            for name, value in rate_limit_headers.items():
                if name not in response.headers:
                    response.headers[name] = value
        return response

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Log all incoming requests and responses with timing"""
        request_id = request.headers.get(settings.request_id_header) or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_context(request_id)
        app.state.services.metrics.increment_requests()

        start_time = time.time()
        client_ip = get_client_ip(request, settings.trusted_proxies)
        log_request_start(request.method, request.url.path, client_ip=client_ip)

        try:
            response = await call_next(request)
        except Exception as e:
            log_exception(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                },
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_request_end(request.method, request.url.path, response.status_code, duration_ms)
        response.headers[settings.request_id_header] = request_id
        return response

    @app.exception_handler(WidgetError)
    async def widget_error_handler(request: Request, exc: WidgetError):
        request_id = current_request_id(request)
        if exc.http_status >= 500:
            get_logger("api").error(
                "request_failed",
                code=exc.code,
                error=exc.message,
                path=request.url.path,
            )
        headers = dict(exc.headers)
        headers[settings.request_id_header] = request_id
        return JSONResponse(
            status_code=exc.http_status,
            content=error_envelope(exc, request_id),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = WidgetError(validation_error_code(exc), details=_validation_details(exc))
        request_id = current_request_id(request)
        return JSONResponse(
            status_code=error.http_status,
            content=error_envelope(error, request_id),
            headers={settings.request_id_header: request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        request_id = current_request_id(request)
        log_exception(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "request_id": request_id,
            }
        )
        return JSONResponse(
            status_code=500,
            content=error_envelope(WidgetError("INTERNAL_ERROR"), request_id),
            headers={settings.request_id_header: request_id},
        )

    app.include_router(health_router)
    app.include_router(widget_router)

    @app.get("/")
    async def read_root():
        return {"message": "Try-On Widget API is running."}

    return app


app = create_app()

# Example for running locally (uvicorn tryon_widget_server.main_api:app --reload)
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
