"""
Checkout orchestration: pending transaction -> signed PayWay request -> outcome.

The transaction row always exists before the provider is contacted, and any
known failure marks it failed before the error propagates.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.orm import Session

from entitlement_api.core import config
from entitlement_api.core.exceptions import BillingValidationError
from entitlement_api.core.time_utils import utcnow
from entitlement_api.db.models.transaction import Transaction
from entitlement_api.services import transaction_service
from entitlement_api.services.payway_service import (
    PayWayGateway,
    build_ordered_fields,
    encode_items,
)

logger = logging.getLogger(__name__)


@dataclass
class CustomerIdentity:
    """Caller identity as established by upstream auth."""
    user_id: str
    email: Optional[str] = None
    firstname: str = "User"
    lastname: str = ""
    phone: Optional[str] = None


@dataclass
class CheckoutResult:
    tran_id: str
    redirect_url: Optional[str] = None
    html: Optional[str] = None


def format_amount(amount: float) -> str:
    """5.0 -> "5", 5.5 -> "5.5", 10.25 -> "10.25"."""
    return ("%.2f" % float(amount)).rstrip("0").rstrip(".")


def with_tran_id(url: str, tran_id: str) -> str:
    """Set tran_id in url's query string, keeping any existing parameters."""
    parts = urlsplit(url)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "tran_id"]
    query.append(("tran_id", tran_id))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def product_name(plan: Optional[str]) -> str:
    return f"{plan.capitalize()} Plan Subscription" if plan else "Subscription Payment"


def build_purchase_fields(
    transaction: Transaction,
    merchant_id: str,
    customer: CustomerIdentity,
    req_time: str,
    continue_success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
):
    """Canonical purchase fields for a pending transaction; empty values are dropped."""
    items = encode_items([{
        "name": product_name(transaction.plan),
        "quantity": 1,
        "price": transaction.amount,
    }])
    success_url = with_tran_id(
        continue_success_url or f"{config.HOST}/dashboard/settings?success=true",
        transaction.tran_id,
    )

    # payment_gate and view_type are not in the provider's signed field list,
    # so they are not sent. PayWay then picks its default checkout view; if it
    # stops redirecting to the hosted page, that is the field set to revisit.
    return build_ordered_fields({
        "req_time": req_time,
        "merchant_id": merchant_id,
        "tran_id": transaction.tran_id,
        "amount": format_amount(transaction.amount),
        "items": items,
        "firstname": customer.firstname,
        "lastname": customer.lastname,
        "email": customer.email,
        "phone": customer.phone,
        "type": "purchase",
        "payment_option": "cards",
        "return_url": f"{config.HOST}/payway/return",
        "cancel_url": cancel_url or f"{config.HOST}/dashboard/settings?canceled=true",
        "continue_success_url": success_url,
        "currency": transaction.currency,
    })


def create_checkout(
    db: Session,
    gateway: PayWayGateway,
    customer: CustomerIdentity,
    amount: float,
    plan: Optional[str] = None,
    continue_success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """
    Create a PayWay checkout for the caller.

    Raises:
        BillingValidationError: missing user or bad amount/plan (nothing is written)
        GatewayError: provider answered non-2xx (transaction marked failed)
    """
    if not customer.user_id:
        raise BillingValidationError("Authentication required")

    now = now or utcnow()
    transaction = transaction_service.create_pending(
        db,
        user_id=customer.user_id,
        amount=amount,
        plan=plan,
        now=now,
    )
    tran_id = transaction.tran_id

    try:
        fields = build_purchase_fields(
            transaction,
            merchant_id=gateway.merchant_id,
            customer=customer,
            req_time=transaction_service.request_time(now),
            continue_success_url=continue_success_url,
            cancel_url=cancel_url,
        )
        response = gateway.submit_purchase(fields)
    except Exception:
        _fail_quietly(db, tran_id)
        raise

    logger.info(f"Checkout created: tran_id={tran_id}, user_id={customer.user_id}, redirected={response.redirect_url is not None}")
    return CheckoutResult(tran_id=tran_id, redirect_url=response.redirect_url, html=response.html)


def _fail_quietly(db: Session, tran_id: str) -> None:
    """Mark tran_id failed; a failure here is logged so the checkout error still surfaces."""
    try:
        transaction_service.mark_failed(db, tran_id)
    except Exception:
        logger.exception(f"Failed to update transaction status: tran_id={tran_id}")
