"""
Quota enforcement dependency for metered features.

require_quota authenticates the caller, checks the monthly allowance
and hands the route a QuotaGrant. The route calls grant.record() only after
the feature has actually succeeded, so failed invocations are never counted.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from entitlement_api.core.auth_dependency import AuthUser, get_current_user
from entitlement_api.core.exceptions import BillingValidationError, RoleMismatchError
from entitlement_api.core.plan_catalog import FeatureKey, PlanCatalog, build_default_catalog
from entitlement_api.db.session import get_db
from entitlement_api.services.entitlement_service import EntitlementService, UsageDecision

logger = logging.getLogger(__name__)


@lru_cache()
def get_plan_catalog() -> PlanCatalog:
    """Catalog is built once per process and never mutated."""
    return build_default_catalog()


def get_entitlement_service(catalog: PlanCatalog = Depends(get_plan_catalog)) -> EntitlementService:
    return EntitlementService(catalog)


@dataclass
class QuotaGrant:
    user: AuthUser
    feature: FeatureKey
    decision: UsageDecision
    service: EntitlementService
    db: Session

    def record(self) -> Optional[int]:
        """Count one successful use of the granted feature."""
        return self.service.record_use(self.db, self.user.user_id, self.feature, self.user.role)


def evaluate_or_raise(
    service: EntitlementService,
    db: Session,
    user: AuthUser,
    feature,
) -> UsageDecision:
    """
    Check the caller's allowance and translate denials into HTTP errors.

    Raises:
        HTTPException 400: unknown feature
        HTTPException 403: feature belongs to the other role
        HTTPException 402: feature not included in the caller's plan
        HTTPException 429: monthly allowance used up
    """
    try:
        decision = service.check_usage(db, user.user_id, feature, user.role)
    except RoleMismatchError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if decision.allowed:
        return decision

    logger.warning(
        f"Quota denied: user_id={user.user_id}, feature={feature}, "
        f"plan={decision.plan}, limit={decision.limit}, used={decision.current}"
    )
    detail = {
        "error": "quota_exceeded" if decision.limit > 0 else "feature_unavailable",
        "feature": str(getattr(feature, "value", feature)),
        "plan": decision.plan,
        "limit": decision.limit,
        "used": decision.current,
        "message": decision.message,
    }
    if decision.limit == 0:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)
    raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)


def require_quota(
    feature: str,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: EntitlementService = Depends(get_entitlement_service),
) -> QuotaGrant:
    """
    Dependency that admits the caller only while they have allowance left for
    the {feature} named in the route path.

    Returns:
        QuotaGrant; call grant.record() once the feature succeeds
    """
    decision = evaluate_or_raise(service, db, user, feature)
    logger.debug(
        f"Quota check passed: user_id={user.user_id}, feature={feature}, "
        f"plan={decision.plan}, used={decision.current}/{decision.limit}"
    )
    return QuotaGrant(user=user, feature=FeatureKey(feature), decision=decision, service=service, db=db)
