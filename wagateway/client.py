from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from .errors import ClientError


LOGGER = logging.getLogger("wagateway.client")


EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_READY = "ready"
EVENT_AUTH_FAILURE = "auth_failure"
EVENT_DISCONNECTED = "disconnected"

CLIENT_EVENTS = frozenset(
    {EVENT_QR, EVENT_AUTHENTICATED, EVENT_READY, EVENT_AUTH_FAILURE, EVENT_DISCONNECTED}
)


@dataclass(frozen=True, slots=True)
class ClientEvent:
    """Typed event raised by a messaging client.

    ``data`` carries the pairing code for ``qr``, the failure message for
    ``auth_failure`` and the reason for ``disconnected``.
    """

    kind: str
    data: Optional[str] = None

    @classmethod
    def parse(cls, kind: Any, data: Any = None) -> "ClientEvent":
        cleaned = str(kind or "").strip().lower()
        if cleaned not in CLIENT_EVENTS:
            raise ValueError(f"unknown_event: {cleaned or '-'}")
        if data is not None and not isinstance(data, str):
            data = str(data)
        if cleaned == EVENT_QR and not (data or "").strip():
            raise ValueError("qr_event_requires_code")
        return cls(kind=cleaned, data=data)


EventSink = Callable[[ClientEvent], None]


class MessagingClient(Protocol):
    async def initialize(self) -> None:
        ...

    async def send_message(self, address: str, body: str) -> Any:
        ...

    async def logout(self) -> None:
        ...

    async def destroy(self) -> None:
        ...


ClientFactory = Callable[[str, Path, EventSink], MessagingClient]


class WawebBridgeClient:
    """Client for a whatsapp-web.js sidecar reachable over HTTP.

    The sidecar owns the browser and the ``LocalAuth`` directory; it pushes
    client events back to ``webhook_url`` which the gateway feeds into
    the session's event channel.
    """

    def __init__(
        self,
        session_id: str,
        auth_store: Path,
        emit: EventSink,
        *,
        base_url: str,
        webhook_url: str,
        token: Optional[str] = None,
        webhook_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.session_id = session_id
        self.auth_store = auth_store
        self._emit = emit
        self._base_url = base_url.rstrip("/")
        self._webhook_url = webhook_url
        self._webhook_token = webhook_token
        headers = {"Content-Type": "application/json"}
        if token:
            headers["X-Auth-Token"] = token
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _path(self, action: str) -> str:
        return f"/session/{self.session_id}/{action}"

    async def _call(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.post(self._path(action), json=payload or {})
        except httpx.HTTPError as exc:
            LOGGER.error(
                "event=bridge_request_failed session_id=%s action=%s error=%s",
                self.session_id,
                action,
                exc,
            )
            raise ClientError(action, str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= 400:
            detail = response.text[:200] if response.text else f"status={response.status_code}"
            LOGGER.error(
                "event=bridge_request_rejected session_id=%s action=%s status=%s",
                self.session_id,
                action,
                response.status_code,
            )
            raise ClientError(action, detail)
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}

    async def initialize(self) -> None:
        payload: Dict[str, Any] = {
            "clientId": self.session_id,
            "authDir": str(self.auth_store),
            "webhook": self._webhook_url,
        }
        if self._webhook_token:
            payload["webhookToken"] = self._webhook_token
        await self._call("start", payload)
        LOGGER.info("event=bridge_initialized session_id=%s", self.session_id)

    async def send_message(self, address: str, body: str) -> Dict[str, Any]:
        return await self._call("send", {"chatId": address, "message": body})

    async def logout(self) -> None:
        await self._call("logout")

    async def destroy(self) -> None:
        try:
            await self._call("destroy")
        finally:
            await self._http.aclose()


def bridge_client_factory(
    *,
    base_url: str,
    public_url: str,
    token: Optional[str] = None,
    webhook_token: Optional[str] = None,
    timeout: float = 10.0,
) -> ClientFactory:
    def _factory(session_id: str, auth_store: Path, emit: EventSink) -> WawebBridgeClient:
        return WawebBridgeClient(
            session_id,
            auth_store,
            emit,
            base_url=base_url,
            webhook_url=f"{public_url.rstrip('/')}/webhook/client/{session_id}",
            token=token,
            webhook_token=webhook_token,
            timeout=timeout,
        )

    return _factory


__all__ = [
    "EVENT_QR",
    "EVENT_AUTHENTICATED",
    "EVENT_READY",
    "EVENT_AUTH_FAILURE",
    "EVENT_DISCONNECTED",
    "CLIENT_EVENTS",
    "ClientEvent",
    "EventSink",
    "MessagingClient",
    "ClientFactory",
    "WawebBridgeClient",
    "bridge_client_factory",
]
