import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from entitlement_api.core.auth_dependency import AuthUser, get_current_user, verify_cron_token
from entitlement_api.core.exceptions import BillingValidationError, TransactionNotFoundError
from entitlement_api.db.session import get_db
from entitlement_api.schemas.billing import RenewalReportResponse, TransactionRequest, TransactionResponse
from entitlement_api.services import transaction_service
from entitlement_api.services.renewal_service import run_renewals

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def _require_tran_id(request: TransactionRequest) -> str:
    if not request.tran_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tran_id is required")
    return request.tran_id


@router.post("/auto-renew", response_model=RenewalReportResponse, dependencies=[Depends(verify_cron_token)])
def auto_renew(db: Session = Depends(get_db)):
    """
    Renewal batch, called by the scheduler.

    Creates a pending successor for each expired auto-renewing subscription.
    No charge is made; the user completes payment manually.
    """
    report = run_renewals(db)
    logger.info(f"[Auto-Renew] Processed {report.processed} renewals")
    return {"success": True, **report.to_dict()}


@router.post("/cancel-auto-renew", response_model=TransactionResponse)
def cancel_auto_renew(
    request: TransactionRequest,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Stop renewing; access continues until the current expiry."""
    tran_id = _require_tran_id(request)
    try:
        return transaction_service.cancel_auto_renew(db, user.user_id, tran_id)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/downgrade-to-free", response_model=TransactionResponse)
def downgrade_to_free(
    request: TransactionRequest,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Stop renewing and expire the paid plan now."""
    tran_id = _require_tran_id(request)
    try:
        return transaction_service.downgrade_to_free(db, user.user_id, tran_id)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
