"""
Tests for checkout orchestration: pending row first, failed on any gateway problem.
"""
from datetime import datetime
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest

from entitlement_api.core.exceptions import BillingValidationError, GatewayError
from entitlement_api.db.models.transaction import Transaction
from entitlement_api.services.checkout_service import (
    CustomerIdentity,
    create_checkout,
    format_amount,
    with_tran_id,
)
from entitlement_api.services.payway_service import HmacSha512Signer, PayWayGateway


NOW = datetime(2025, 5, 20, 12, 30, 15)
CUSTOMER = CustomerIdentity(user_id="user-1", email="student@example.com", firstname="Ana", lastname="Lee")


def make_gateway(handler):
    return PayWayGateway(
        merchant_id="ec000001",
        signer=HmacSha512Signer("test-key"),
        purchase_url="https://payway.test/purchase",
        check_url="https://payway.test/check",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_format_amount():
    assert format_amount(5) == "5"
    assert format_amount(5.5) == "5.5"
    assert format_amount(10.25) == "10.25"


def test_with_tran_id_keeps_existing_query():
    url = with_tran_id("https://app.test/done?success=true", "123")
    assert dict(parse_qsl(urlsplit(url).query)) == {"success": "true", "tran_id": "123"}


def test_successful_checkout(db):
    captured = {}

    def handler(request):
        if request.url.host == "payway.test":
            captured["form"] = dict(parse_qsl(request.read().decode()))
            return httpx.Response(302, headers={"Location": "https://checkout.payway.test/hosted/xyz"})
        return httpx.Response(200, text="hosted page")

    result = create_checkout(db, make_gateway(handler), CUSTOMER, amount=5, plan="basic", now=NOW)

    assert result.redirect_url == "https://checkout.payway.test/hosted/xyz"
    transaction = db.query(Transaction).one()
    assert transaction.tran_id == result.tran_id
    assert transaction.status == "pending"

    form = captured["form"]
    assert form["tran_id"] == result.tran_id
    assert form["amount"] == "5"
    assert form["firstname"] == "Ana"
    assert f"tran_id={result.tran_id}" in form["continue_success_url"]
    assert "payment_gate" not in form
    assert "view_type" not in form


def test_html_checkout(db):
    result = create_checkout(
        db,
        make_gateway(lambda request: httpx.Response(200, text="<html>pay</html>")),
        CUSTOMER,
        amount=15,
        plan="pro",
        now=NOW,
    )

    assert result.html == "<html>pay</html>"
    assert result.redirect_url is None


def test_gateway_error_marks_transaction_failed(db):
    gateway = make_gateway(lambda request: httpx.Response(502, text="upstream down"))

    with pytest.raises(GatewayError):
        create_checkout(db, gateway, CUSTOMER, amount=5, plan="basic", now=NOW)

    assert db.query(Transaction).one().status == "failed"


def test_network_error_marks_transaction_failed(db):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(httpx.ConnectError):
        create_checkout(db, make_gateway(handler), CUSTOMER, amount=5, plan="basic", now=NOW)

    assert db.query(Transaction).one().status == "failed"


def test_validation_happens_before_any_write(db):
    gateway = make_gateway(lambda request: httpx.Response(200, text="unused"))

    with pytest.raises(BillingValidationError):
        create_checkout(db, gateway, CUSTOMER, amount=0, plan="basic", now=NOW)
    with pytest.raises(BillingValidationError):
        create_checkout(db, gateway, CustomerIdentity(user_id=""), amount=5, now=NOW)

    assert db.query(Transaction).count() == 0
