from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from types import SimpleNamespace
from typing import Awaitable, Callable, Iterable, Optional

import pytest
from fastapi.testclient import TestClient

from wagateway.client import ClientEvent, EventSink


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClient:
    def __init__(self, session_id: str, auth_store: Path, emit: EventSink, owner: "FakeClientFactory") -> None:
        self.session_id = session_id
        self.auth_store = auth_store
        self.emit = emit
        self._owner = owner
        self.calls: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.send_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.logout_gate: Optional[asyncio.Event] = None

    async def initialize(self) -> None:
        self.calls.append("initialize")
        if self._owner.on_initialize is not None:
            await self._owner.on_initialize(self)
        if self._owner.initialize_error is not None:
            raise self._owner.initialize_error
        self.auth_store.mkdir(parents=True, exist_ok=True)
        (self.auth_store / "creds.json").write_text("{}", encoding="utf-8")

    async def send_message(self, address: str, body: str) -> dict[str, str]:
        self.calls.append("send_message")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((address, body))
        return {"id": f"msg-{len(self.sent)}"}

    async def logout(self) -> None:
        self.calls.append("logout")
        if self.logout_gate is not None:
            await self.logout_gate.wait()
        if self.logout_error is not None:
            raise self.logout_error

    async def destroy(self) -> None:
        self.calls.append("destroy")

    def raise_event(self, kind: str, data: Optional[str] = None) -> None:
        self.emit(ClientEvent(kind, data))


class FakeClientFactory:
    def __init__(self) -> None:
        self.clients: dict[str, FakeClient] = {}
        self.initialize_error: Optional[Exception] = None
        self.on_initialize: Optional[Callable[[FakeClient], Awaitable[None]]] = None

    def __call__(self, session_id: str, auth_store: Path, emit: EventSink) -> FakeClient:
        client = FakeClient(session_id, auth_store, emit, self)
        self.clients[session_id] = client
        return client


def fake_qr(code: str) -> str:
    return f"data:image/png;base64,{code}"


def id_sequence(ids: Iterable[str]):
    iterator = iter(itertools.chain(ids, (f"auto{i}" for i in itertools.count(1))))
    return lambda: next(iterator)


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def make_manager(tmp_path: Path, client_factory: FakeClientFactory):
    from wagateway.lifecycle import SessionLifecycleManager

    def _make(**kwargs):
        kwargs.setdefault("sessions_dir", tmp_path / "sessions")
        kwargs.setdefault("qr_encoder", fake_qr)
        return SessionLifecycleManager(client_factory, **kwargs)

    return _make


@pytest.fixture
def gateway(
    request: pytest.FixtureRequest,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    client_factory: FakeClientFactory,
):
    import wagateway.api as api_module

    overrides = dict(getattr(request, "param", None) or {})

    def _fake_config():
        values = dict(
            sessions_dir=tmp_path / "sessions",
            bridge_url="http://waweb.test",
            bridge_token=None,
            bridge_timeout=1.0,
            public_url="http://app.test",
            webhook_token=None,
            port=4000,
            address_suffix="@c.us",
            qr_refresh_seconds=5,
            events_heartbeat=0.05,
            events_queue_size=10,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    real_manager = api_module.SessionLifecycleManager
    ids = id_sequence(["A", "C"])

    def _manager(factory, **kwargs):
        return real_manager(factory, qr_encoder=fake_qr, id_factory=ids, **kwargs)

    monkeypatch.setattr("wagateway.api.gateway_config", _fake_config)
    monkeypatch.setattr("wagateway.api.bridge_client_factory", lambda **kwargs: client_factory)
    monkeypatch.setattr("wagateway.api.SessionLifecycleManager", _manager)

    app = api_module.create_app()
    with TestClient(app) as client:
        yield client, client_factory, app.state.session_manager
