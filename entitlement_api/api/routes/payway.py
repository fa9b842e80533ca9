"""
PayWay checkout endpoints.

create starts a checkout; check-transaction asks the provider for the current
state; update-transaction applies that state to our transaction row.
"""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from entitlement_api.core.auth_dependency import AuthUser, get_current_user
from entitlement_api.core.exceptions import (
    BillingValidationError,
    GatewayError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.db.session import get_db
from entitlement_api.schemas.billing import (
    CheckTransactionResponse,
    CreateCheckoutRequest,
    CreateCheckoutResponse,
    TransactionRequest,
    TransactionResponse,
)
from entitlement_api.services import transaction_service
from entitlement_api.services.checkout_service import CustomerIdentity, create_checkout
from entitlement_api.services.payway_service import PayWayGateway, build_gateway, interpret_check_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payway", tags=["PayWay"])


def get_gateway():
    """PayWay gateway dependency; the HTTP client is closed after the request."""
    try:
        gateway = build_gateway()
    except ValueError as e:
        logger.error(f"PayWay not configured: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="PayWay configuration missing")
    try:
        yield gateway
    finally:
        gateway.close()


def gateway_error_response(e: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=e.status_code,
        content={"error": "PayWay API error", "status_code": e.status_code, "details": e.body},
    )


def _resolve_transaction(db: Session, user: AuthUser, tran_id: Optional[str]) -> Transaction:
    try:
        if tran_id:
            return transaction_service.get_transaction(db, tran_id, user_id=user.user_id)
        transaction = transaction_service.latest_pending(db, user.user_id)
        if transaction is None:
            raise TransactionNotFoundError()
        return transaction
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/create",
    response_model=CreateCheckoutResponse,
    responses={200: {"content": {"text/html": {}}}},
)
def create_payment(
    request: CreateCheckoutRequest,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PayWayGateway = Depends(get_gateway),
):
    """
    Create a PayWay checkout.

    Returns {url, tran_id} when PayWay redirects to its hosted page, otherwise
    the provider's HTML for direct rendering. Provider errors are passed
    through with their status code.
    """
    customer = CustomerIdentity(
        user_id=user.user_id,
        email=user.email,
        firstname=request.firstname or user.firstname or "User",
        lastname=request.lastname or user.lastname or "",
        phone=request.phone or user.phone,
    )

    try:
        result = create_checkout(
            db,
            gateway,
            customer,
            amount=request.amount,
            plan=request.plan,
            continue_success_url=request.continue_success_url,
            cancel_url=request.cancel_url,
        )
    except BillingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except GatewayError as e:
        return gateway_error_response(e)
    except httpx.HTTPError as e:
        logger.error(f"PayWay request failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to reach PayWay")

    if result.redirect_url:
        return {"url": result.redirect_url, "tran_id": result.tran_id}
    return HTMLResponse(content=result.html or "", headers={"X-Tran-Id": result.tran_id})


@router.post("/check-transaction", response_model=CheckTransactionResponse)
def check_transaction(
    request: TransactionRequest,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PayWayGateway = Depends(get_gateway),
):
    """Ask PayWay for the state of one of the caller's transactions. Nothing is written."""
    transaction = _resolve_transaction(db, user, request.tran_id)

    try:
        payload = gateway.check_transaction(transaction.tran_id)
    except GatewayError as e:
        return gateway_error_response(e)
    except httpx.HTTPError as e:
        logger.error(f"PayWay check-transaction failed: tran_id={transaction.tran_id}, error={e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to reach PayWay")

    result = interpret_check_response(payload)
    return {
        "tran_id": transaction.tran_id,
        "status": result.status.value,
        "payment_status_message": result.payment_status_message,
        "provider_response": payload,
    }


@router.post("/update-transaction", response_model=TransactionResponse)
def update_transaction(
    request: TransactionRequest,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PayWayGateway = Depends(get_gateway),
):
    """
    Confirm a transaction with PayWay and apply the outcome.

    Without a tran_id the caller's most recent pending transaction is used.
    An inconclusive provider answer leaves the row pending.
    """
    transaction = _resolve_transaction(db, user, request.tran_id)
    tran_id = transaction.tran_id

    try:
        payload = gateway.check_transaction(tran_id)
    except GatewayError as e:
        return gateway_error_response(e)
    except httpx.HTTPError as e:
        logger.error(f"PayWay check-transaction failed: tran_id={tran_id}, error={e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to reach PayWay")

    result = interpret_check_response(payload)
    try:
        if result.status == TransactionStatus.COMPLETED:
            transaction = transaction_service.mark_completed(
                db,
                tran_id,
                transaction_date=result.transaction_date,
                payment_status_message=result.payment_status_message,
                gateway_payload=result.raw,
            )
        elif result.status == TransactionStatus.FAILED:
            transaction = transaction_service.mark_failed(db, tran_id)
        else:
            logger.info(f"PayWay has no final status yet for tran_id={tran_id}")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return transaction
