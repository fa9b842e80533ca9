import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from entitlement_api.core.auth_dependency import AuthUser, get_current_user
from entitlement_api.core.quota_guard import get_entitlement_service, get_plan_catalog
from entitlement_api.core.plan_catalog import PlanCatalog
from entitlement_api.db.session import get_db
from entitlement_api.schemas.usage import FixPlanResponse, PlanStatusResponse
from entitlement_api.services import transaction_service
from entitlement_api.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Plan"])


@router.get("/plan", response_model=PlanStatusResponse, status_code=status.HTTP_200_OK)
def get_plan(
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Current effective plan with expiry and renewal details."""
    return service.plan_status(db, user.user_id)


@router.post("/plan/fix", response_model=FixPlanResponse)
def fix_plan(
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    """Infer the plan of completed payments that were stored without one."""
    fixed = transaction_service.fix_missing_plans(db, user.user_id, user.role, catalog)
    return {"fixed": len(fixed), "transactions": fixed}
