from __future__ import annotations

import json
import logging
import pathlib
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi import Body, FastAPI, Form, HTTPException, Query, Request, Response
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    StreamingResponse,
)
from fastapi.templating import Jinja2Templates
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from config import gateway_config

from .bus import Notification, NotificationBus, Subscription
from .client import ClientEvent, bridge_client_factory
from .errors import (
    ClientError,
    InvalidInputError,
    SessionNotFoundError,
    SessionNotReadyError,
    TeardownError,
)
from .lifecycle import SessionLifecycleManager
from .registry import STATE_AWAITING_SCAN, STATE_READY


logger = logging.getLogger("wagateway.api")

TEMPLATES_DIR = pathlib.Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

LOGOUT_OK_MESSAGE = "Logged out and session cleared. Scan a new QR code."


def format_sse(notification: Notification) -> str:
    data = json.dumps(notification.payload, ensure_ascii=False)
    return f"event: {notification.kind}\ndata: {data}\n\n"


async def event_stream(
    subscription: Subscription,
    *,
    heartbeat: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Yield server-sent events for ``subscription`` until the peer goes away."""
    try:
        yield ": connected\n\n"
        while not await is_disconnected():
            notification = await subscription.get(timeout=heartbeat)
            if notification is None:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(notification)
    finally:
        subscription.close()


def _json_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"status": "error", "message": message},
        status_code=status_code,
        headers=dict(NO_STORE_HEADERS),
    )


class ClientEventBody(BaseModel):
    event: str
    data: Any = None


def create_app() -> FastAPI:
    cfg = gateway_config()
    factory = bridge_client_factory(
        base_url=cfg.bridge_url,
        public_url=cfg.public_url,
        token=cfg.bridge_token,
        webhook_token=cfg.webhook_token,
        timeout=cfg.bridge_timeout,
    )
    bus = NotificationBus(queue_size=cfg.events_queue_size)
    manager = SessionLifecycleManager(
        factory,
        sessions_dir=cfg.sessions_dir,
        bus=bus,
        address_suffix=cfg.address_suffix,
    )
    logger.info(
        "stage=gateway_configured bridge_url=%s sessions_dir=%s webhook_token_present=%s",
        cfg.bridge_url,
        cfg.sessions_dir,
        "true" if cfg.webhook_token else "false",
    )

    app = FastAPI(title="wagateway")
    app.state.session_manager = manager
    app.state.config = cfg

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.get("/start-session")
    async def start_session():
        try:
            snapshot = await manager.start_session()
        except ClientError as exc:
            logger.error("event=start_session_failed error=%s", exc)
            return _json_error("Failed to start session.", 502)
        return RedirectResponse(f"/qr/{snapshot.session_id}", status_code=303)

    @app.get("/qr/{session_id}")
    async def qr_view(request: Request, session_id: str):
        try:
            snapshot = manager.snapshot(session_id)
        except SessionNotFoundError:
            return PlainTextResponse("Session not found.", status_code=404)
        if snapshot.state == STATE_READY:
            return RedirectResponse(f"/send-message/{session_id}", status_code=303)
        if snapshot.state == STATE_AWAITING_SCAN and snapshot.qr_payload:
            return templates.TemplateResponse(
                request,
                "qr.html",
                {
                    "session_id": session_id,
                    "qr_code_data": snapshot.qr_payload,
                    "refresh_seconds": cfg.qr_refresh_seconds,
                    "events_url": f"/events?session_id={session_id}",
                    "send_url": f"/send-message/{session_id}",
                },
                headers=dict(NO_STORE_HEADERS),
            )
        return templates.TemplateResponse(
            request,
            "qr_pending.html",
            {
                "session_id": session_id,
                "state": snapshot.state,
                "last_error": snapshot.last_error,
                "refresh_seconds": cfg.qr_refresh_seconds,
            },
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/send-message/{session_id}")
    async def send_message_form(request: Request, session_id: str):
        record = manager.registry.find(session_id)
        if record is None or record.state != STATE_READY:
            return RedirectResponse(f"/qr/{session_id}", status_code=303)
        return templates.TemplateResponse(
            request,
            "send_message.html",
            {
                "session_id": session_id,
                "send_url": f"/send-message/{session_id}",
                "logout_url": f"/logout/{session_id}",
            },
        )

    @app.post("/send-message/{session_id}")
    async def send_message(
        session_id: str,
        number: Optional[str] = Form(default=None),
        message: Optional[str] = Form(default=None),
    ):
        if session_id not in manager.registry:
            return PlainTextResponse("Session not found.", status_code=404)
        try:
            await manager.send_message(session_id, number or "", message or "")
        except SessionNotFoundError:
            return PlainTextResponse("Session not found.", status_code=404)
        except InvalidInputError as exc:
            logger.info("event=send_rejected session_id=%s field=%s", session_id, exc.field)
            return _json_error("Please provide both number and message.", 400)
        except SessionNotReadyError as exc:
            return _json_error(f"Session is not ready (state={exc.state}).", 409)
        except ClientError:
            return PlainTextResponse("Failed to send message.", status_code=500)
        return RedirectResponse(f"/qr/{session_id}", status_code=303)

    @app.post("/logout/{session_id}")
    async def logout(session_id: str):
        try:
            await manager.logout(session_id)
        except SessionNotFoundError:
            return _json_error("Session not found.", 404)
        except TeardownError as exc:
            logger.error("event=logout_failed session_id=%s step=%s", session_id, exc.step)
            return _json_error("Failed to log out.", 500)
        return JSONResponse(
            {"status": "success", "message": LOGOUT_OK_MESSAGE},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/session/{session_id}/status")
    async def session_status(session_id: str):
        try:
            snapshot = manager.snapshot(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail="session_not_found") from exc
        return JSONResponse(snapshot.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.get("/events")
    async def events(request: Request, session_id: Optional[str] = Query(default=None)):
        subscription = manager.bus.subscribe(session_id)
        return StreamingResponse(
            event_stream(
                subscription,
                heartbeat=cfg.events_heartbeat,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers=dict(SSE_HEADERS),
        )

    @app.post("/webhook/client/{session_id}")
    async def client_webhook(
        request: Request,
        session_id: str,
        payload: ClientEventBody = Body(...),
    ):
        if cfg.webhook_token:
            header = request.headers.get("X-Webhook-Token", "").strip()
            if header != cfg.webhook_token:
                logger.warning("event=webhook_token_invalid session_id=%s", session_id)
                return JSONResponse({"error": "not_authorized"}, status_code=401)
        try:
            event = ClientEvent.parse(payload.event, payload.data)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        try:
            applied = await manager.deliver_event(session_id, event)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail="session_not_found") from exc
        record = manager.registry.find(session_id)
        return JSONResponse(
            {
                "ok": True,
                "applied": applied,
                "state": record.state if record is not None else None,
            }
        )

    @app.get("/health")
    async def health():
        return JSONResponse({"ok": True, "sessions": manager.stats_snapshot()})

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "event_stream", "format_sse"]
