"""
Structured logging for the widget server.

structlog renders over stdlib logging, as JSON in deployed environments and as
plain console lines locally. Every entry carries the app name and, inside a
request, the bound request context (request id, merchant id once known).
Merchant keys and webhook secrets are masked before rendering.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

from tryon_widget_server.domain import LIVE_KEY_PREFIX, TEST_KEY_PREFIX, WEBHOOK_SECRET_PREFIX

_SECRET_FIELDS = frozenset({"api_key", "merchant_key", "live_key", "test_key", "webhook_secret"})
_SECRET_PREFIXES = (LIVE_KEY_PREFIX, TEST_KEY_PREFIX, WEBHOOK_SECRET_PREFIX)


def mask_secret(value: Optional[str], visible: int = 8) -> str:
    """Mask an API key or secret, keeping its prefix for correlation."""
    if not value:
        return "***"
    return f"{value[:visible]}..." if len(value) > visible else "***"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = "tryon-widget"
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask merchant keys and webhook secrets wherever they appear as values."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if key in _SECRET_FIELDS or value.startswith(_SECRET_PREFIXES):
            event_dict[key] = mask_secret(value)
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
) -> None:
    """
    Configure structlog and the root stdlib logger.

    Args:
        log_level: Level name for the root logger
        log_format: 'json' for deployed environments, 'console' for local runs
        log_file: Also write to this file, rotated at ``log_max_bytes``
        log_max_bytes: Rotation size of the log file
        log_backup_count: Rotated files kept
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        handler.setLevel(level)
        logging.getLogger().addHandler(handler)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(request_id: str, **context) -> None:
    """Start a fresh log context for the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_merchant(merchant_id: int, is_test_mode: bool) -> None:
    """Attach the authenticated merchant to every later entry of the request."""
    structlog.contextvars.bind_contextvars(merchant_id=merchant_id, test_mode=is_test_mode)


def log_request_start(method: str, path: str, client_ip: str = None, **kwargs) -> None:
    get_logger("api").info("request_start", method=method, path=path, client_ip=client_ip, **kwargs)


def log_request_end(method: str, path: str, status_code: int, duration_ms: float, **kwargs) -> None:
    """Errors (4xx/5xx) are logged at warning level so they stand out from traffic."""
    logger = get_logger("api")
    log = logger.info if status_code < 400 else logger.warning
    log(
        "request_end",
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=round(duration_ms, 2),
        **kwargs
    )


def log_try_on_start(session_id: str, merchant_id: int, attempt: int, **kwargs) -> None:
    get_logger("tryon").info(
        "try_on_start",
        session_id=session_id,
        merchant_id=merchant_id,
        attempt=attempt,
        **kwargs
    )


def log_try_on_end(
    session_id: str,
    merchant_id: int,
    duration_ms: float,
    success: bool = True,
    error: str = None,
    **kwargs
) -> None:
    """
    Log the outcome of one try-on attempt.

    Failures carry the provider error and are logged at error level; the
    session is left in ``failed`` and no quota is charged for them.
    """
    logger = get_logger("tryon")
    if success:
        logger.info(
            "try_on_end",
            session_id=session_id,
            merchant_id=merchant_id,
            duration_ms=round(duration_ms, 2),
            **kwargs
        )
    else:
        logger.error(
            "try_on_failed",
            session_id=session_id,
            merchant_id=merchant_id,
            duration_ms=round(duration_ms, 2),
            error=error,
            **kwargs
        )


def log_webhook_delivery(
    event: str,
    session_id: str,
    url: str,
    success: bool,
    attempts: int,
    error: str = None,
    **kwargs
) -> None:
    """Log the outcome of a webhook delivery (all attempts)."""
    logger = get_logger("webhooks")
    log = logger.info if success else logger.warning
    log(
        "webhook_delivery",
        webhook_event=event,
        session_id=session_id,
        url=url,
        success=success,
        attempts=attempts,
        error=error,
        **kwargs
    )


def log_rate_limit_exceeded(
    subject_type: str,
    subject_id: str,
    limit_value: int,
    reset_at: float,
    **kwargs
) -> None:
    """
    Log a rejected request.

    Args:
        subject_type: 'merchant' or 'ip'
        subject_id: Merchant ID or client IP
        limit_value: Requests allowed per window
        reset_at: Epoch seconds when the window resets
    """
    get_logger("rate_limiter").warning(
        "rate_limit_exceeded",
        subject_type=subject_type,
        subject_id=subject_id,
        limit_value=limit_value,
        reset_at=int(reset_at),
        **kwargs
    )


def log_exception(exception: Exception, context: Dict[str, Any] = None, **kwargs) -> None:
    """Log an unhandled exception with its traceback and request context."""
    get_logger("exception").error(
        "exception_occurred",
        exc_info=exception,
        exception_type=type(exception).__name__,
        exception_message=str(exception),
        **(context or {}),
        **kwargs
    )
