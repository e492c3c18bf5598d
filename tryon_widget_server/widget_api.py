"""
Widget API routes (prefix ``/api/widget``).

Every response uses the envelope ``{"success": true, "data": ...}``; errors
are raised as ``WidgetError`` and rendered by the app's exception handlers.
"""
import asyncio
import json
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse

from tryon_widget_server.auth import AuthContext, get_services, optional_merchant, require_merchant
from tryon_widget_server.domain import SessionStatus, WidgetSession, utcnow
from tryon_widget_server.errors import SessionError, success_envelope
from tryon_widget_server.logging_config import get_logger
from tryon_widget_server.models import CreateSessionRequest, TryOnRequest
from tryon_widget_server.quota import QuotaAccountant
from tryon_widget_server.tryon import PhotoInput
from tryon_widget_server.webhooks import WebhookEvent

logger = get_logger(__name__)

router = APIRouter(prefix="/api/widget", tags=["widget"])


def _iframe_url(request: Request, session_id: str) -> str:
    settings = get_services(request).settings
    base_url = (settings.base_url or str(request.base_url)).rstrip("/")
    return f"{base_url}/widget/embed?session={session_id}"


async def _session_for_reader(request: Request, session_id: str, auth: Optional[AuthContext]) -> WidgetSession:
    """
    Resolve a session for the result/poll endpoints.

    With a key the session must belong to the caller. Without one, the
    owning merchant must still exist and be active.
    """
    services = get_services(request)
    if auth is not None:
        return await services.sessions.get_owned_session(session_id, auth.merchant.id)

    session = await services.sessions.get_session(session_id)
    merchant = await services.storage.get_merchant(session.merchant_id)
    if merchant is None or not merchant.is_active:
        raise SessionError("SESSION_NOT_FOUND")
    return session


@router.post("/verify")
async def verify(auth: AuthContext = Depends(require_merchant)):
    """
    Verify the API key and origin domain.
    Returns the account summary and current quota usage.
    """
    return success_envelope({
        "merchant": auth.merchant.to_public_dict(),
        "quota": QuotaAccountant.usage(auth.merchant),
        "isTestMode": auth.is_test_mode,
        "originDomain": auth.origin_domain,
    })


@router.post("/session", status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    auth: AuthContext = Depends(require_merchant),
):
    """
    Create a new try-on session for one product.
    Returns the session and the iframe URL that hosts the widget.
    """
    services = get_services(request)
    options = body.options
    session = await services.sessions.create_session(
        auth.merchant,
        body.product.to_snapshot(),
        max_try_ons=options.max_try_ons if options else None,
        external_user_id=body.user.id if body.user else None,
        callback_url=options.callback_url if options else None,
        origin_domain=auth.origin_domain,
    )
    services.metrics.increment_sessions()
    services.webhooks.notify(auth.merchant, WebhookEvent.SESSION_CREATED, session)

    data = session.to_dict()
    data["iframeUrl"] = _iframe_url(request, session.id)
    data["isTestMode"] = auth.is_test_mode
    return success_envelope(data)


@router.get("/session/{session_id}")
async def get_session(
    session_id: str,
    request: Request,
    auth: AuthContext = Depends(require_merchant),
):
    """Get session status and details"""
    services = get_services(request)
    session = await services.sessions.get_owned_session(session_id, auth.merchant.id)
    return success_envelope(session.to_dict())


@router.post("/session/{session_id}/try-on")
async def submit_try_on(
    session_id: str,
    body: TryOnRequest,
    request: Request,
    auth: AuthContext = Depends(require_merchant),
):
    """
    Submit a shopper photo and generate the try-on image.
    Blocks until the generator answers or times out.
    """
    services = get_services(request)
    outcome = await services.orchestrator.process_try_on(
        auth.merchant,
        session_id,
        PhotoInput(photo=body.photo, photo_url=body.photo_url),
    )
    return success_envelope(outcome.to_dict())


@router.get("/session/{session_id}/result")
async def get_result(
    session_id: str,
    request: Request,
    auth: Optional[AuthContext] = Depends(optional_merchant),
):
    """
    Get the latest try-on result for a session.
    ``result`` is null until a try-on has succeeded.
    """
    session = await _session_for_reader(request, session_id, auth)
    if session.status == SessionStatus.EXPIRED:
        raise SessionError("SESSION_EXPIRED")

    session_data = session.to_dict()
    return success_envelope({
        "sessionId": session.id,
        "status": session_data["status"],
        "tryOnCount": session.try_on_count,
        "remainingTryOns": session.remaining_try_ons,
        "result": session_data["result"],
        "error": session_data["error"],
    })


def _sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.get("/session/{session_id}/poll")
async def poll_session(
    session_id: str,
    request: Request,
    auth: Optional[AuthContext] = Depends(optional_merchant),
):
    """
    Stream session status changes as server-sent events.

    Emits a ``status`` event whenever the status or try-on count changes,
    and closes once the session reaches a terminal state or the maximum
    polling duration has elapsed.
    """
    services = get_services(request)
    settings = services.settings
    session = await _session_for_reader(request, session_id, auth)

    async def event_stream():
        current = session
        last_seen = None
        deadline = time.monotonic() + settings.poll_max_duration_seconds
        while True:
            marker = (current.status, current.try_on_count)
            if marker != last_seen:
                last_seen = marker
                yield _sse_event("status", current.to_dict(utcnow()))
            if current.status.is_terminal:
                return
            if time.monotonic() >= deadline:
                yield _sse_event("timeout", {"sessionId": current.id, "status": current.status.value})
                return
            if await request.is_disconnected():
                logger.info("poll_client_disconnected", session_id=current.id)
                return
            await asyncio.sleep(settings.poll_interval_seconds)
            try:
                current = await services.sessions.get_session(session_id)
            except SessionError:
                yield _sse_event("error", {"sessionId": session_id, "code": "SESSION_NOT_FOUND"})
                return

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/session/{session_id}")
async def delete_session(
    session_id: str,
    request: Request,
    auth: AuthContext = Depends(require_merchant),
):
    """Expire a session. Repeating the call is harmless."""
    services = get_services(request)
    await services.sessions.get_owned_session(session_id, auth.merchant.id)
    session = await services.sessions.expire_session(session_id)
    return success_envelope(
        {"id": session.id, "status": session.effective_status().value},
        message="Session expired",
    )
