"""
Tests for POST /device/code, /device/token, /device/authorize, /device/deny over HTTP.
SQL store on in-memory SQLite with a fake clock; IdP verification replaced by a static verifier.
"""
import base64
import re
import threading
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from device_server.database import SessionLocal, get_db, init_db
from device_server.device_endpoints import DEVICE_GRANT_TYPE, get_store
from device_server.identity import get_verifier
from device_server.main import app
from device_server.models import AuditLog
from device_server.seed import ensure_client
from device_server.store import MemoryDeviceCodeStore, SqlDeviceCodeStore


@pytest.fixture
def seeded():
    init_db()
    db = SessionLocal()
    try:
        ensure_client(db, "c1")
        ensure_client(db, "c2")
        ensure_client(db, "conf-client", client_secret="conf-secret")
        yield db
    finally:
        db.close()


@pytest.fixture
def client(seeded, clock, verifier):
    def _store(db: Session = Depends(get_db)):
        return SqlDeviceCodeStore(db, clock)

    app.dependency_overrides[get_store] = _store
    app.dependency_overrides[get_verifier] = lambda: verifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _issue(client, client_id="c1", **extra):
    r = client.post("/device/code", json={"client_id": client_id, **extra})
    assert r.status_code == 200, r.text
    return r.json()


def _poll(client, device_code, client_id="c1", **extra):
    return client.post(
        "/device/token",
        json={"grant_type": DEVICE_GRANT_TYPE, "device_code": device_code, "client_id": client_id, **extra},
    )


def _authorize(client, user_code, access_token="good-access-token"):
    return client.post(
        "/device/authorize",
        json={
            "user_code": user_code,
            "access_token": access_token,
            "id_token": "id-token-value",
            "refresh_token": "refresh-token-value",
        },
    )


def _error(r):
    return r.json().get("error")


def test_full_device_flow(client):
    data = _issue(client)
    assert data["expires_in"] == 600
    assert data["interval"] == 5
    assert re.match(r"^[a-f0-9]{32}$", data["device_code"])
    assert re.match(r"^[A-Z2-9]{4}-[A-Z2-9]{4}$", data["user_code"])
    assert data["verification_uri"]
    assert data["verification_uri_complete"].endswith(f"user_code={data['user_code']}")

    r = _poll(client, data["device_code"])
    assert r.status_code == 400
    assert _error(r) == "authorization_pending"

    r = _authorize(client, data["user_code"])
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": "Device authorized successfully"}

    r = _poll(client, data["device_code"])
    assert r.status_code == 200
    body = r.json()
    assert body["access_token"] == "good-access-token"
    assert body["id_token"] == "id-token-value"
    assert body["refresh_token"] == "refresh-token-value"
    assert body["token_type"] == "Bearer"
    assert body["expires_in"] == 3600
    assert r.headers["Cache-Control"] == "no-store"

    r = _poll(client, data["device_code"])
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_responses_are_not_cached(client):
    r = client.post("/device/code", json={"client_id": "c1"})
    assert r.headers["Cache-Control"] == "no-store"
    assert r.headers["Pragma"] == "no-cache"
    r = _poll(client, r.json()["device_code"])
    assert r.headers["Cache-Control"] == "no-store"


def test_authorize_after_expiry(client, clock):
    data = _issue(client)
    clock.advance(601)
    r = _authorize(client, data["user_code"])
    assert r.status_code == 400
    assert _error(r) == "expired_token"


def test_poll_after_expiry_even_when_authorized(client, clock):
    data = _issue(client)
    assert _authorize(client, data["user_code"]).status_code == 200
    clock.advance(600)
    r = _poll(client, data["device_code"])
    assert r.status_code == 400
    assert _error(r) == "expired_token"
    assert _error(_poll(client, data["device_code"])) == "invalid_grant"


def test_issue_rejects_missing_or_unknown_client(client):
    r = client.post("/device/code", json={})
    assert r.status_code == 400
    assert _error(r) == "invalid_request"
    r = client.post("/device/code", json={"client_id": "nobody"})
    assert r.status_code == 400
    assert _error(r) == "invalid_request"
    r = client.post("/device/code", json={"client_id": "c1", "scope": "openid root"})
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_malformed_body_is_invalid_request(client):
    r = client.post("/device/code", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_request", "error_description": "Invalid JSON in request body"}


def test_token_rejects_bad_grant_type_and_device_code(client):
    data = _issue(client)
    r = client.post(
        "/device/token",
        json={"grant_type": "authorization_code", "device_code": data["device_code"], "client_id": "c1"},
    )
    assert r.status_code == 400
    assert _error(r) == "unsupported_grant_type"

    r = _poll(client, "not-a-device-code")
    assert r.status_code == 400
    assert _error(r) == "invalid_request"

    r = _poll(client, "0" * 32)
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_wrong_client_cannot_take_tokens(client):
    data = _issue(client, "c1")
    _authorize(client, data["user_code"])
    r = _poll(client, data["device_code"], client_id="c2")
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"
    assert _poll(client, data["device_code"]).status_code == 200


def test_authorize_rejects_bad_bearer(client):
    data = _issue(client)
    r = _authorize(client, data["user_code"], access_token="forged")
    assert r.status_code == 401
    assert _error(r) == "invalid_token"
    assert _error(_poll(client, data["device_code"])) == "authorization_pending"


def test_authorize_validation(client):
    data = _issue(client)
    r = client.post(
        "/device/authorize",
        json={"user_code": data["user_code"], "access_token": "good-access-token", "refresh_token": "r"},
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_request"

    r = _authorize(client, "bad")
    assert r.status_code == 400
    assert _error(r) == "invalid_request"

    r = _authorize(client, "WDJB-MJHT")
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_authorize_twice(client):
    data = _issue(client)
    assert _authorize(client, data["user_code"]).status_code == 200
    r = _authorize(client, data["user_code"].lower().replace("-", ""))
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


def test_deny(client):
    data = _issue(client)
    r = client.post("/device/deny", json={"user_code": data["user_code"], "access_token": "good-access-token"})
    assert r.status_code == 200
    assert r.json()["success"] is True

    r = _poll(client, data["device_code"])
    assert r.status_code == 400
    assert _error(r) == "access_denied"
    assert _error(_poll(client, data["device_code"])) == "invalid_grant"


def test_confidential_client_must_authenticate(client):
    data = _issue(client, "conf-client")
    r = _poll(client, data["device_code"], client_id="conf-client")
    assert r.status_code == 401
    assert _error(r) == "invalid_client"

    r = _poll(client, data["device_code"], client_id="conf-client", client_secret="wrong")
    assert r.status_code == 401

    r = _poll(client, data["device_code"], client_id="conf-client", client_secret="conf-secret")
    assert _error(r) == "authorization_pending"

    basic = base64.b64encode(b"conf-client:conf-secret").decode("ascii")
    r = client.post(
        "/device/token",
        json={"grant_type": DEVICE_GRANT_TYPE, "device_code": data["device_code"], "client_id": "conf-client"},
        headers={"Authorization": f"Basic {basic}"},
    )
    assert _error(r) == "authorization_pending"


def test_audit_records_flow_without_tokens(client):
    data = _issue(client, "c2")
    _authorize(client, data["user_code"])
    _poll(client, data["device_code"], client_id="c2")

    r = client.get("/audit", params={"client_id": "c2"})
    assert r.status_code == 200
    events = {e["event_type"] for e in r.json()}
    assert {"device_code_issued", "device_authorized", "device_token_delivered"} <= events
    assert "good-access-token" not in r.text
    assert data["device_code"] not in r.text


def test_audit_records_authorize_failure(client):
    data = _issue(client)
    _authorize(client, data["user_code"], access_token="forged")
    db = SessionLocal()
    try:
        row = db.query(AuditLog).filter(AuditLog.event_type == "device_authorize_fail").order_by(AuditLog.id.desc()).first()
        assert row is not None
        assert row.outcome == "fail"
    finally:
        db.close()


def _audit_failing_for(*events):
    def build(**kwargs):
        if kwargs["event_type"] in events:
            raise OperationalError("INSERT INTO audit_log", {}, Exception("database is locked"))
        return AuditLog(**kwargs)
    return patch("device_server.audit.AuditLog", side_effect=build)


def test_tokens_delivered_when_audit_write_fails(client):
    data = _issue(client)
    assert _authorize(client, data["user_code"]).status_code == 200

    with _audit_failing_for("device_token_delivered"):
        r = _poll(client, data["device_code"])
    assert r.status_code == 200
    assert r.json()["access_token"] == "good-access-token"
    assert _error(_poll(client, data["device_code"])) == "invalid_grant"


def test_authorize_and_deny_succeed_when_audit_write_fails(client):
    approved = _issue(client)
    denied = _issue(client)
    with _audit_failing_for("device_authorized", "device_denied"):
        assert _authorize(client, approved["user_code"]).status_code == 200
        r = client.post("/device/deny", json={"user_code": denied["user_code"], "access_token": "good-access-token"})
        assert r.status_code == 200
    assert _poll(client, approved["device_code"]).status_code == 200
    assert _error(_poll(client, denied["device_code"])) == "access_denied"


def test_rate_limit_code_returns_429_when_exceeded(client):
    with patch("device_server.device_endpoints.RATE_LIMIT_CODE_PER_MINUTE", 2):
        assert client.post("/device/code", json={"client_id": "c1"}).status_code == 200
        assert client.post("/device/code", json={"client_id": "c1"}).status_code == 200
        r = client.post("/device/code", json={"client_id": "c1"})
        assert r.status_code == 429
        assert "Retry-After" in r.headers


def test_polling_is_not_rate_limited(client):
    data = _issue(client)
    with patch("device_server.device_endpoints.RATE_LIMIT_AUTHORIZE_PER_MINUTE", 1):
        for _ in range(5):
            assert _error(_poll(client, data["device_code"])) == "authorization_pending"


def test_metadata_and_health(client):
    r = client.get("/.well-known/oauth-authorization-server")
    assert r.status_code == 200
    meta = r.json()
    assert meta["device_authorization_endpoint"].endswith("/device/code")
    assert meta["token_endpoint"].endswith("/device/token")
    assert DEVICE_GRANT_TYPE in meta["grant_types_supported"]

    r = client.get("/health")
    assert r.json()["service"] == "device_server"


def test_memory_store_created_once_under_concurrent_first_requests():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
    barrier = threading.Barrier(8)
    stores = []
    lock = threading.Lock()

    def slow_store():
        time.sleep(0.05)
        return MemoryDeviceCodeStore()

    def first_request():
        barrier.wait()
        store = get_store(request, db=None)
        with lock:
            stores.append(store)

    with patch("device_server.device_endpoints.STORE_BACKEND", "memory"), patch(
        "device_server.device_endpoints.MemoryDeviceCodeStore", side_effect=slow_store
    ) as factory:
        threads = [threading.Thread(target=first_request) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert factory.call_count == 1
    assert len(stores) == 8
    assert all(store is stores[0] for store in stores)
