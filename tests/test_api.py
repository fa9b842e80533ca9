"""
Integration tests for the HTTP surface.
"""
from datetime import timedelta

import httpx
import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from entitlement_api.api.routes.payway import get_gateway
from entitlement_api.core import config
from entitlement_api.core.plan_catalog import Role
from entitlement_api.core.quota_guard import QuotaGrant, require_quota
from entitlement_api.core.security import create_access_token
from entitlement_api.core.time_utils import utcnow
from entitlement_api.db.models.transaction import Transaction
from entitlement_api.db.session import get_db
from entitlement_api.main import app
from entitlement_api.services.payway_service import HmacSha512Signer, PayWayGateway


class FakePayWay:
    """Holds the handler the mocked provider answers with."""

    def __init__(self):
        self.handler = lambda request: httpx.Response(500, text="no handler")

    def gateway(self):
        return PayWayGateway(
            merchant_id="ec000001",
            signer=HmacSha512Signer("test-key"),
            purchase_url="https://payway.test/purchase",
            check_url="https://payway.test/check",
            client=httpx.Client(transport=httpx.MockTransport(lambda request: self.handler(request))),
        )


@pytest.fixture
def payway():
    return FakePayWay()


@pytest.fixture
def client(db, payway, db_override):
    app.dependency_overrides[get_db] = db_override
    app.dependency_overrides[get_gateway] = payway.gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user_id="user-1", role=Role.STUDENT):
    token = create_access_token(user_id, role, email=f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_usage_requires_authentication(client):
    assert client.get("/me/usage").status_code == 401
    assert client.get("/me/usage", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_usage_overview(client):
    response = client.get("/me/usage", headers=auth_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["plan"] == "free"
    assert [item["feature"] for item in data["usage"]] == [
        "role_suggestion", "interview_prep", "ats_analyze", "resume_generate",
    ]


def test_record_until_quota_exceeded(client):
    headers = auth_headers()
    for expected in range(1, 6):
        response = client.post("/me/usage/interview_prep", headers=headers)
        assert response.status_code == 200
        assert response.json()["recorded"] == expected

    response = client.post("/me/usage/interview_prep", headers=headers)

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["error"] == "quota_exceeded"
    assert detail["limit"] == 5
    assert detail["used"] == 5

    check = client.get("/me/usage/interview_prep", headers=headers).json()
    assert check["allowed"] is False
    assert check["current"] == 5


def test_role_mismatch_is_forbidden(client):
    response = client.post("/me/usage/job_prediction", headers=auth_headers(role=Role.STUDENT))
    assert response.status_code == 403


def test_unknown_feature(client):
    assert client.get("/me/usage/teleport", headers=auth_headers()).status_code == 400


def test_feature_not_on_plan(client, make_subscription):
    make_subscription(plan="growth", expires_at=utcnow() + timedelta(days=10))

    response = client.post("/me/usage/interview_prep", headers=auth_headers())

    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "feature_unavailable"


def test_plan_endpoint(client):
    response = client.get("/me/plan", headers=auth_headers())
    assert response.status_code == 200
    assert response.json()["plan"] == "free"
    assert response.json()["is_active"] is False


def test_fix_plan(client, make_transaction):
    make_transaction(plan=None, amount=15)

    response = client.post("/me/plan/fix", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["fixed"] == 1
    assert response.json()["transactions"][0]["plan"] == "pro"


def test_create_checkout_redirect(client, payway, db):
    def handler(request):
        if request.url.host == "payway.test":
            return httpx.Response(302, headers={"Location": "https://checkout.payway.test/hosted/1"})
        return httpx.Response(200, text="hosted")

    payway.handler = handler

    response = client.post("/payway/create", json={"amount": 5, "plan": "basic"}, headers=auth_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["url"] == "https://checkout.payway.test/hosted/1"
    assert db.query(Transaction).filter(Transaction.tran_id == data["tran_id"]).one().status == "pending"


def test_create_checkout_html(client, payway):
    payway.handler = lambda request: httpx.Response(200, text="<html>pay here</html>")

    response = client.post("/payway/create", json={"amount": 5, "plan": "basic"}, headers=auth_headers())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "pay here" in response.text


def test_create_checkout_gateway_error(client, payway, db):
    payway.handler = lambda request: httpx.Response(503, text="maintenance")

    response = client.post("/payway/create", json={"amount": 5, "plan": "basic"}, headers=auth_headers())

    assert response.status_code == 503
    assert response.json() == {"error": "PayWay API error", "status_code": 503, "details": "maintenance"}
    assert db.query(Transaction).one().status == "failed"


def test_create_checkout_invalid_plan(client, db):
    response = client.post("/payway/create", json={"amount": 5, "plan": "free"}, headers=auth_headers())

    assert response.status_code == 400
    assert db.query(Transaction).count() == 0


def test_update_transaction_completes_payment(client, payway):
    def hosted_redirect(request):
        if request.url.path == "/purchase":
            return httpx.Response(302, headers={"Location": "https://checkout.payway.test/h"})
        return httpx.Response(200, text="hosted")

    payway.handler = hosted_redirect
    headers = auth_headers()
    tran_id = client.post("/payway/create", json={"amount": 5, "plan": "basic"}, headers=headers).json()["tran_id"]

    payway.handler = lambda request: httpx.Response(200, json={
        "status": {"code": "00"},
        "data": {"payment_status_code": 0, "payment_status": "APPROVED"},
    })

    response = client.post("/payway/update-transaction", json={"tran_id": tran_id}, headers=headers)

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert client.get("/me/plan", headers=headers).json()["plan"] == "basic"


def test_update_latest_pending_declined(client, payway, make_transaction):
    make_transaction(status="pending", expires_at=utcnow() + timedelta(days=30))
    payway.handler = lambda request: httpx.Response(200, json={
        "data": {"payment_status_code": 2, "payment_status": "DECLINED"},
    })

    response = client.post("/payway/update-transaction", json={}, headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["status"] == "failed"


def test_check_transaction_of_another_user(client, make_transaction):
    make_transaction(user_id="user-2", status="pending")

    response = client.post(
        "/payway/check-transaction",
        json={"tran_id": "20250101000000000001"},
        headers=auth_headers("user-1"),
    )

    assert response.status_code == 404


def test_cancel_and_downgrade(client, make_transaction, make_subscription):
    expires = utcnow() + timedelta(days=20)
    make_transaction(expires_at=expires, auto_renew=True)
    make_subscription(plan="basic", expires_at=expires, auto_renew=True)
    headers = auth_headers()

    response = client.post("/subscriptions/cancel-auto-renew", json={"tran_id": "20250101000000000001"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["auto_renew"] is False
    assert client.get("/me/plan", headers=headers).json()["plan"] == "basic"

    response = client.post("/subscriptions/downgrade-to-free", json={"tran_id": "20250101000000000001"}, headers=headers)
    assert response.status_code == 200
    assert client.get("/me/plan", headers=headers).json()["plan"] == "free"


def test_cancel_requires_tran_id(client):
    response = client.post("/subscriptions/cancel-auto-renew", json={}, headers=auth_headers())
    assert response.status_code == 400


def test_auto_renew_rejected_without_configured_secret(client, monkeypatch):
    monkeypatch.setattr(config, "AUTO_RENEW_SECRET_TOKEN", None)
    response = client.post("/subscriptions/auto-renew", headers={"Authorization": "Bearer anything"})
    assert response.status_code == 401


def test_auto_renew_with_secret(client, monkeypatch, make_transaction):
    monkeypatch.setattr(config, "AUTO_RENEW_SECRET_TOKEN", "cron-secret")
    make_transaction(expires_at=utcnow() - timedelta(days=1), auto_renew=True)

    assert client.post("/subscriptions/auto-renew", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.post("/subscriptions/auto-renew", headers={"Authorization": "Bearer cron-secret"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["processed"] == 1
    assert data["renewals"][0]["status"] == "pending_manual_payment"


def test_require_quota_only_counts_successful_calls(db, db_override):
    """A feature route guarded by require_quota records usage only when it succeeds."""
    feature_app = FastAPI()

    @feature_app.post("/features/{feature}")
    def run_feature(fail: bool = False, grant: QuotaGrant = Depends(require_quota)):
        if fail:
            raise HTTPException(status_code=500, detail="model unavailable")
        return {"count": grant.record()}

    feature_app.dependency_overrides[get_db] = db_override
    feature_client = TestClient(feature_app)
    headers = auth_headers()

    assert feature_client.post("/features/resume_generate?fail=true", headers=headers).status_code == 500
    assert feature_client.post("/features/resume_generate", headers=headers).json() == {"count": 1}

    response = feature_client.post("/features/resume_generate", headers=headers)
    assert response.status_code == 429
    assert response.json()["detail"]["feature"] == "resume_generate"

    company = auth_headers("company-1", Role.COMPANY)
    assert feature_client.post("/features/resume_generate", headers=company).status_code == 403
    assert feature_client.post("/features/teleport", headers=headers).status_code == 400
