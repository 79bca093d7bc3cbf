from __future__ import annotations

import pytest


def _deliver(client, session_id: str, event: str, data: str | None = None):
    return client.post(f"/webhook/client/{session_id}", json={"event": event, "data": data})


def test_pairing_to_send_scenario(gateway):
    client, factory, manager = gateway

    start = client.get("/start-session", follow_redirects=False)
    assert start.status_code == 303
    assert start.headers["location"] == "/qr/A"

    pending = client.get("/qr/A")
    assert pending.status_code == 200
    assert "not yet available" in pending.text

    response = _deliver(client, "A", "qr", "X123")
    assert response.json() == {"ok": True, "applied": True, "state": "awaiting_scan"}

    qr_page = client.get("/qr/A")
    assert qr_page.status_code == 200
    assert 'src="data:image/png;base64,X123"' in qr_page.text
    assert 'http-equiv="refresh" content="5"' in qr_page.text
    assert "/events?session_id=A" in qr_page.text

    assert client.get("/send-message/A", follow_redirects=False).headers["location"] == "/qr/A"

    _deliver(client, "A", "authenticated")
    _deliver(client, "A", "ready")

    redirect = client.get("/qr/A", follow_redirects=False)
    assert redirect.status_code == 303
    assert redirect.headers["location"] == "/send-message/A"

    form = client.get("/send-message/A")
    assert form.status_code == 200
    assert 'name="number"' in form.text
    assert 'action="/logout/A"' in form.text

    sent = client.post(
        "/send-message/A",
        data={"number": "+62 812-3456", "message": "hi"},
        follow_redirects=False,
    )
    assert sent.status_code == 303
    assert sent.headers["location"] == "/qr/A"
    assert factory.clients["A"].sent == [("628123456@c.us", "hi")]


def test_send_message_unknown_session_returns_404(gateway):
    client, _, _ = gateway
    response = client.post("/send-message/B", data={"number": "1", "message": "hi"})
    assert response.status_code == 404


def test_send_message_missing_fields_returns_400(gateway):
    client, factory, _ = gateway
    client.get("/start-session")
    _deliver(client, "A", "qr", "X1")
    _deliver(client, "A", "authenticated")
    _deliver(client, "A", "ready")

    response = client.post("/send-message/A", data={"number": "62812"})
    assert response.status_code == 400
    assert response.json()["status"] == "error"

    json_response = client.post("/send-message/A", json={"message": "hi"})
    assert json_response.status_code == 400
    assert factory.clients["A"].sent == []


def test_send_message_not_ready_returns_409(gateway):
    client, factory, _ = gateway
    client.get("/start-session")

    response = client.post("/send-message/A", data={"number": "62812", "message": "hi"})

    assert response.status_code == 409
    assert "send_message" not in factory.clients["A"].calls


def test_send_message_client_failure_returns_500(gateway):
    client, factory, manager = gateway
    client.get("/start-session")
    for event, data in (("qr", "X1"), ("authenticated", None), ("ready", None)):
        _deliver(client, "A", event, data)
    factory.clients["A"].send_error = RuntimeError("evaluation failed")

    response = client.post("/send-message/A", data={"number": "62812", "message": "hi"})

    assert response.status_code == 500
    assert manager.snapshot("A").state == "ready"


def test_logout_then_qr_returns_404(gateway):
    client, factory, manager = gateway
    client.get("/start-session")
    for event, data in (("qr", "X1"), ("authenticated", None), ("ready", None)):
        _deliver(client, "A", event, data)
    auth_store = manager.registry.get("A").auth_store
    assert auth_store.exists()

    response = client.post("/logout/A")

    assert response.status_code == 200
    assert response.json() == {
        "status": "success",
        "message": "Logged out and session cleared. Scan a new QR code.",
    }
    assert not auth_store.exists()
    assert client.get("/qr/A").status_code == 404
    assert client.post("/logout/A").status_code == 404
    assert _deliver(client, "A", "ready").status_code == 404


def test_logout_failure_returns_500_and_keeps_session(gateway):
    client, factory, manager = gateway
    client.get("/start-session")
    factory.clients["A"].logout_error = RuntimeError("protocol error")

    response = client.post("/logout/A")

    assert response.status_code == 500
    assert response.json() == {"status": "error", "message": "Failed to log out."}
    assert "A" in manager.registry


def test_start_session_failure_returns_502(gateway):
    client, factory, manager = gateway
    factory.initialize_error = RuntimeError("bridge unreachable")

    response = client.get("/start-session", follow_redirects=False)

    assert response.status_code == 502
    assert len(manager.registry) == 0


def test_status_endpoint_reports_snapshot(gateway):
    client, _, _ = gateway
    client.get("/start-session")
    _deliver(client, "A", "qr", "X1")
    _deliver(client, "A", "auth_failure", "timeout")

    payload = client.get("/session/A/status").json()

    assert payload["session_id"] == "A"
    assert payload["state"] == "failed"
    assert payload["qr_available"] is False
    assert payload["last_error"] == "timeout"
    assert client.get("/session/missing/status").status_code == 404

    page = client.get("/qr/A")
    assert "not yet available" in page.text
    assert "timeout" in page.text


def test_webhook_rejects_unknown_events_and_bad_transitions(gateway):
    client, _, _ = gateway
    client.get("/start-session")

    assert _deliver(client, "A", "message", "hello").status_code == 422
    malformed = client.post(
        "/webhook/client/A", content="not json", headers={"content-type": "application/json"}
    )
    assert malformed.status_code == 422
    assert _deliver(client, "missing", "ready").status_code == 404

    rejected = _deliver(client, "A", "ready")
    assert rejected.status_code == 200
    assert rejected.json() == {"ok": True, "applied": False, "state": "created"}


@pytest.mark.parametrize("gateway", [{"webhook_token": "s3cret"}], indirect=True)
def test_webhook_token_enforced(gateway):
    client, _, _ = gateway
    client.get("/start-session")

    denied = client.post("/webhook/client/A", json={"event": "qr", "data": "X1"})
    assert denied.status_code == 401

    allowed = client.post(
        "/webhook/client/A",
        json={"event": "qr", "data": "X1"},
        headers={"X-Webhook-Token": "s3cret"},
    )
    assert allowed.status_code == 200
    assert allowed.json()["state"] == "awaiting_scan"


def test_health_and_metrics(gateway):
    client, _, _ = gateway
    client.get("/start-session")

    health = client.get("/health").json()
    assert health["ok"] is True
    assert health["sessions"]["created"] == 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "wa_session_start_total" in metrics.text
