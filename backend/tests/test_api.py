from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

from fastapi.testclient import TestClient
import pytest

from accountguard.admission import AdmissionController
from accountguard.billing import sign_payload
from accountguard.config import settings
from accountguard.db import get_db, init_db, reset_database_engine
from accountguard.ledger import EventLedger
from accountguard.main import app, get_admission, get_identity, get_storage
from accountguard.models import Profile
from accountguard.rate_limit import SlidingWindowLimiter
from accountguard.security import create_access_token

WEBHOOK_SECRET = "whsec_api_test"


class FakeIdentity:
    def __init__(self):
        self.accounts = {"a1@example.com": ("correct-horse", "a1")}
        self.removed = []

    async def verify_credentials(self, email, password):
        stored = self.accounts.get(email)
        if stored is None or stored[0] != password:
            return None
        return stored[1]

    async def remove_account(self, account_id):
        self.removed.append(account_id)


class FakeStorage:
    def __init__(self):
        self.removed = []

    async def remove_objects(self, refs):
        self.removed.extend(refs)
        return {ref: True for ref in refs}


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    original_secret = settings.billing_webhook_secret
    test_url = f"sqlite:///{tmp_path / 'api-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    object.__setattr__(settings, "billing_webhook_secret", WEBHOOK_SECRET)
    reset_database_engine(test_url)
    init_db()
    with get_db() as session:
        session.add(Profile(id="a1", email="a1@example.com", plan="free"))

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        object.__setattr__(settings, "billing_webhook_secret", original_secret)
        reset_database_engine(original_db_url)


@pytest.fixture
def fakes():
    identity = FakeIdentity()
    storage = FakeStorage()
    controller = AdmissionController(ledger=EventLedger(), counter=SlidingWindowLimiter(), identity=identity)

    app.dependency_overrides[get_identity] = lambda: identity
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_admission] = lambda: controller
    try:
        yield identity, storage
    finally:
        app.dependency_overrides.clear()


def _signin(client, password="correct-horse", email="a1@example.com"):
    return client.post("/api/auth/signin", json={"email": email, "password": password})


def _auth_headers(client):
    token = _signin(client).json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def test_protected_routes_require_jwt(fakes):
    client = TestClient(app)
    assert client.get("/api/usage").status_code == 401
    assert client.post("/api/usage/consume", json={"storage_path": "x.png"}).status_code == 401
    assert client.delete("/api/auth/account").status_code == 401


def test_signin_returns_token_and_generic_error(fakes):
    client = TestClient(app)

    ok = _signin(client)
    assert ok.status_code == 200
    assert ok.json()["account_id"] == "a1"
    assert ok.json()["token_type"] == "bearer"

    bad = _signin(client, password="wrong")
    assert bad.status_code == 401
    assert bad.json()["error"] == "INVALID_CREDENTIALS"

    unknown = _signin(client, email="nobody@example.com")
    assert unknown.json()["message"] == bad.json()["message"]


def test_signin_lockout_surfaces_retry_after(fakes):
    client = TestClient(app)
    for _ in range(5):
        assert _signin(client, password="wrong").status_code == 401

    locked = _signin(client)
    assert locked.status_code == 429
    body = locked.json()
    assert body["error"] == "ACCOUNT_LOCKED"
    assert body["retry_after"] > 0
    assert int(locked.headers["Retry-After"]) == body["retry_after"]

    status = client.get("/api/auth/status", params={"identifier": "A1@example.com"})
    assert status.status_code == 200
    assert status.json()["state"] == "locked"
    assert status.json()["retry_after"] > 0
    assert "failure_count" not in status.json()


def test_rotating_forwarded_header_does_not_escape_origin_block(fakes):
    client = TestClient(app)
    for i in range(20):
        response = client.post(
            "/api/auth/signin",
            json={"email": f"user{i}@example.com", "password": "wrong"},
            headers={"X-Forwarded-For": "9.9.9.9"},
        )
        assert response.status_code == 401

    for forwarded in ("9.9.9.9", "8.8.8.8", "10.0.0.1, 9.9.9.9"):
        response = client.post(
            "/api/auth/signin",
            json={"email": "fresh@example.com", "password": "wrong"},
            headers={"X-Forwarded-For": forwarded},
        )
        assert response.status_code == 429
        assert response.json()["error"] == "IP_BLOCKED"


def test_signin_payload_validation(fakes):
    client = TestClient(app)
    response = client.post("/api/auth/signin", json={"email": "a1@example.com"})
    assert response.status_code == 422


def test_consume_enforces_monthly_quota(fakes):
    client = TestClient(app)
    headers = _auth_headers(client)

    for i in range(10):
        response = client.post("/api/usage/consume", json={"storage_path": f"a1/{i}.png", "file_size": 10}, headers=headers)
        assert response.status_code == 200

    refused = client.post("/api/usage/consume", json={"storage_path": "a1/x.png"}, headers=headers)
    assert refused.status_code == 403
    assert refused.json()["error"] == "QUOTA_EXCEEDED"

    usage = client.get("/api/usage", headers=headers).json()
    assert usage["current_count"] == 10
    assert usage["limit"] == 10
    assert usage["allowed"] is False


def test_delete_account_purges_and_cleans_up(fakes):
    identity, storage = fakes
    client = TestClient(app)
    headers = _auth_headers(client)
    client.post("/api/usage/consume", json={"storage_path": "a1/0.png"}, headers=headers)

    response = client.delete("/api/auth/account", headers=headers)

    assert response.status_code == 200
    assert response.json()["deleted_counts"]["profiles"] == 1
    assert storage.removed == ["a1/0.png"]
    assert identity.removed == ["a1"]

    assert client.get("/api/usage", headers=headers).status_code == 404


def test_delete_account_requires_recent_signin(fakes):
    identity, _ = fakes
    client = TestClient(app)
    issued = datetime.now(timezone.utc) - timedelta(seconds=settings.delete_reauth_seconds + 60)
    stale = create_access_token("a1", "a1@example.com", now=issued)

    response = client.delete("/api/auth/account", headers={"Authorization": f"Bearer {stale}"})

    assert response.status_code == 401
    assert identity.removed == []
    with get_db() as session:
        assert session.get(Profile, "a1") is not None


def _post_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        "/api/billing/webhook",
        content=payload,
        headers={"Billing-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
    )


def test_billing_webhook_is_signed_and_idempotent(fakes):
    client = TestClient(app)
    event = {
        "id": "evt_api_1",
        "type": "customer.subscription.created",
        "data": {
            "object": {
                "id": "sub_api",
                "status": "active",
                "customer": "cus_api",
                "metadata": {"account_id": "a1", "plan_type": "team"},
            }
        },
    }

    first = _post_webhook(client, event)
    assert first.status_code == 200
    assert first.json() == {"received": True, "applied": True}

    again = _post_webhook(client, event)
    assert again.json() == {"received": True, "applied": False}

    headers = _auth_headers(client)
    assert client.get("/api/usage", headers=headers).json()["plan"] == "team"


def test_billing_webhook_rejects_bad_signature(fakes):
    client = TestClient(app)
    response = _post_webhook(client, {"id": "evt_bad", "type": "invoice.paid"}, secret="wrong")
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"


def test_health_and_metrics(fakes):
    client = TestClient(app)
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/api/health").json()["status"] == "ok"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "requests_total" in metrics.text
