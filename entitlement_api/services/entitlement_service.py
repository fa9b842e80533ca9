"""
Entitlement evaluation: resolves a user's effective plan and decides whether a
feature invocation is admitted.

Checking and recording are separate operations so callers can show quota hints
without consuming anything.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from entitlement_api.core.exceptions import BillingValidationError, RoleMismatchError
from entitlement_api.core.plan_catalog import (
    FeatureKey,
    LimitKind,
    PlanCatalog,
    PlanTier,
    Role,
    parse_plan,
)
from entitlement_api.core.retry import with_retry
from entitlement_api.core.time_utils import month_key, utcnow
from entitlement_api.db.models.subscription import Subscription
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.services import usage_ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanState:
    """Effective plan plus the subscription facts it was derived from."""
    plan: PlanTier
    stored_plan: Optional[PlanTier]
    expires_at: Optional[datetime]
    auto_renew: bool
    tran_id: Optional[str]
    months_subscribed: int

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    current: int
    limit: int
    plan: str
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["message"] is None:
            data.pop("message")
        return data


def coerce_feature(feature: Union[FeatureKey, str]) -> FeatureKey:
    try:
        return FeatureKey(feature)
    except ValueError:
        raise BillingValidationError(f"Unknown feature: {feature}")


def coerce_role(role: Union[Role, str]) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise BillingValidationError(f"Unknown role: {role}")


def effective_plan(stored_plan: Optional[PlanTier], expires_at: Optional[datetime], auto_renew: bool, now: datetime) -> PlanTier:
    """An expired plan without auto-renew falls back to free."""
    if stored_plan is None:
        return PlanTier.FREE
    if expires_at is not None and now > expires_at and not auto_renew:
        return PlanTier.FREE
    return stored_plan


class EntitlementService:
    """
    Admission control for metered features.

    Args:
        catalog: Plan catalog built at startup
    """

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Plan resolution
    # ------------------------------------------------------------------

    def resolve_plan(self, db: Session, user_id: str, now: Optional[datetime] = None) -> PlanState:
        """
        Resolve the user's plan.

        The subscription aggregate is authoritative. Users without one (rows
        written before it existed) fall back to their latest completed
        transaction that carries a plan. No history at all means free.
        """
        now = now or utcnow()
        return with_retry(lambda: self._resolve_plan(db, user_id, now), before_retry=db.rollback)

    def _resolve_plan(self, db: Session, user_id: str, now: datetime) -> PlanState:
        subscription = db.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        ).scalar_one_or_none()

        if subscription is not None:
            stored = parse_plan(subscription.current_plan)
            if stored == PlanTier.FREE:
                stored = None
            chain = subscription.renewal_chain or []
            return PlanState(
                plan=effective_plan(stored, subscription.expires_at, subscription.auto_renew, now),
                stored_plan=stored,
                expires_at=subscription.expires_at,
                auto_renew=bool(subscription.auto_renew),
                tran_id=subscription.current_tran_id,
                months_subscribed=(len(chain) + 1) if subscription.current_tran_id else 0,
            )

        paid = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.plan.isnot(None),
            func.trim(Transaction.plan) != "",
        )
        latest = db.execute(
            paid.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(1)
        ).scalar_one_or_none()

        if latest is None:
            return PlanState(PlanTier.FREE, None, None, False, None, 0)

        months = db.execute(
            select(func.count()).select_from(paid.subquery())
        ).scalar_one()
        stored = parse_plan(latest.plan)
        if stored == PlanTier.FREE:
            stored = None
        return PlanState(
            plan=effective_plan(stored, latest.expires_at, latest.auto_renew, now),
            stored_plan=stored,
            expires_at=latest.expires_at,
            auto_renew=bool(latest.auto_renew),
            tran_id=latest.tran_id,
            months_subscribed=int(months),
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _validate(self, feature: Union[FeatureKey, str], role: Union[Role, str]):
        feature = coerce_feature(feature)
        role = coerce_role(role)
        if self.catalog.role_of(feature) != role:
            raise RoleMismatchError(feature.value, role.value)
        return feature, role

    def check_usage(
        self,
        db: Session,
        user_id: str,
        feature: Union[FeatureKey, str],
        role: Union[Role, str],
        now: Optional[datetime] = None,
    ) -> UsageDecision:
        """
        Decide whether user_id may invoke feature right now. Does not record anything.

        Raises:
            BillingValidationError: unknown feature or role
            RoleMismatchError: feature belongs to the other role
        """
        feature, role = self._validate(feature, role)
        now = now or utcnow()
        state = self.resolve_plan(db, user_id, now)
        limit = self.catalog.limit_for(state.plan, role, feature)

        logger.debug(f"check_usage: user_id={user_id}, feature={feature.value}, role={role.value}, plan={state.plan.value}, limit={limit}")

        if limit == 0:
            return UsageDecision(
                allowed=False,
                current=0,
                limit=0,
                plan=state.plan.value,
                message=(
                    f"This feature is not available for your current plan ({state.plan.value}). "
                    "Please upgrade to access this feature."
                ),
            )

        if self.catalog.kind_of(feature) == LimitKind.DURATION:
            allowed = state.expires_at is None or now <= state.expires_at or state.auto_renew
            message = None
            if not allowed:
                message = (
                    f"Your subscription expired on {state.expires_at:%Y-%m-%d}. "
                    "Renew your plan to regain access to this feature."
                )
            return UsageDecision(
                allowed=allowed,
                current=state.months_subscribed,
                limit=limit,
                plan=state.plan.value,
                message=message,
            )

        snapshot = usage_ledger.current_usage(db, user_id, feature, month_key(now))
        allowed = snapshot.count < limit

        logger.debug(f"check_usage: month={month_key(now)}, current={snapshot.count}, allowed={allowed}")

        return UsageDecision(
            allowed=allowed,
            current=snapshot.count,
            limit=limit,
            plan=state.plan.value,
            message=None if allowed else (
                f"You have reached your monthly limit of {limit} for this feature. "
                "Your limit will reset next month, or upgrade your plan for higher limits."
            ),
        )

    def record_use(
        self,
        db: Session,
        user_id: str,
        feature: Union[FeatureKey, str],
        role: Union[Role, str],
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Record one successful use. No-op for duration-based features and for
        features the current plan does not include.

        Returns:
            Counter value after the increment, or None when nothing was recorded
        """
        feature, role = self._validate(feature, role)
        now = now or utcnow()

        if self.catalog.kind_of(feature) == LimitKind.DURATION:
            return None

        state = self.resolve_plan(db, user_id, now)
        limit = self.catalog.limit_for(state.plan, role, feature)
        if limit == 0:
            logger.debug(f"record_use skipped: user_id={user_id}, feature={feature.value}, limit is 0")
            return None

        return usage_ledger.record_use(db, user_id, feature, month_key(now), limit, now=now)

    # ------------------------------------------------------------------
    # Read models for the dashboard
    # ------------------------------------------------------------------

    def usage_overview(
        self,
        db: Session,
        user_id: str,
        role: Union[Role, str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Plan and per-feature usage for every feature of the caller's role."""
        role = coerce_role(role)
        now = now or utcnow()
        state = self.resolve_plan(db, user_id, now)
        month = month_key(now)
        counts = usage_ledger.month_usage(db, user_id, month)

        features: List[Dict[str, Any]] = []
        for feature in self.catalog.features_for_role(role):
            spec = self.catalog.feature(feature)
            limit = self.catalog.limit_for(state.plan, role, feature)
            if spec.kind == LimitKind.DURATION:
                current = state.months_subscribed
            else:
                current = counts.get(feature.value, 0)
            features.append({
                "feature": feature.value,
                "display_name": spec.display_name,
                "kind": spec.kind.value,
                "current": current,
                "limit": limit,
                "percentage": round(current / limit * 100) if limit > 0 else 0,
            })

        return {"plan": state.plan.value, "month": month, "usage": features}

    def plan_status(self, db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Effective plan with expiry and renewal details."""
        now = now or utcnow()
        state = self.resolve_plan(db, user_id, now)
        has_paid_plan = state.stored_plan is not None
        is_expired = has_paid_plan and state.is_expired(now)
        return {
            "plan": state.plan.value,
            "is_expired": is_expired,
            "is_active": has_paid_plan and not is_expired,
            "expires_at": state.expires_at,
            "next_billing_date": state.expires_at if state.auto_renew else None,
            "auto_renew": state.auto_renew,
            "tran_id": state.tran_id,
        }
