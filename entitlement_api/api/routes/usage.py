"""
Usage tracking endpoints.

Provides usage statistics and quota checks for authenticated users.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from entitlement_api.core.auth_dependency import AuthUser, get_current_user
from entitlement_api.core.exceptions import BillingValidationError, RoleMismatchError
from entitlement_api.core.quota_guard import QuotaGrant, get_entitlement_service, require_quota
from entitlement_api.db.session import get_db
from entitlement_api.schemas.usage import UsageCheckResponse, UsageOverviewResponse, UsageRecordResponse
from entitlement_api.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Usage"])


@router.get("/usage", response_model=UsageOverviewResponse, status_code=status.HTTP_200_OK)
def get_usage(
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Get current month usage for every feature of the caller's role.

    Returns:
    - plan: Effective plan after expiry rules
    - month: Billing month in YYYY-MM format
    - usage: Per-feature current/limit/percentage

    Requires authentication via Bearer token.
    """
    overview = service.usage_overview(db, user.user_id, user.role)
    logger.debug(f"Usage summary requested: user_id={user.user_id}, plan={overview['plan']}")
    return overview


@router.get("/usage/{feature}", response_model=UsageCheckResponse, response_model_exclude_none=True)
def check_feature(
    feature: str,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Check whether the caller could use feature now. Nothing is recorded."""
    try:
        decision = service.check_usage(db, user.user_id, feature, user.role)
    except RoleMismatchError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return decision.to_dict()


@router.post("/usage/{feature}", response_model=UsageRecordResponse, response_model_exclude_none=True)
def use_feature(grant: QuotaGrant = Depends(require_quota)):
    """
    Admit and record one use of feature.

    Called by the feature service after its operation succeeded.

    Raises:
        403: feature belongs to the other role
        402: feature not included in the caller's plan
        429: monthly allowance used up
    """
    recorded = grant.record()
    logger.info(f"Usage recorded: user_id={grant.user.user_id}, feature={grant.feature.value}, count={recorded}")
    return {**grant.decision.to_dict(), "recorded": recorded}
