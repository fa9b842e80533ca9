"""
Plan-based usage limits configuration.

Single source of truth for what each plan allows per role and feature.
A limit of 0 means the feature is unavailable on that plan.

The catalog is built once at startup and handed to the services that need it;
nothing reads PLAN_LIMITS directly except build_default_catalog().
"""
import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple


class PlanTier(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    GROWTH = "growth"
    ENTERPRISE = "enterprise"


class Role(str, enum.Enum):
    STUDENT = "student"
    COMPANY = "company"


class FeatureKey(str, enum.Enum):
    # Student features
    ROLE_SUGGESTION = "role_suggestion"
    INTERVIEW_PREP = "interview_prep"
    ATS_ANALYZE = "ats_analyze"
    RESUME_GENERATE = "resume_generate"
    # Company features
    JOB_PREDICTION = "job_prediction"
    ALTERNATIVE_ROLE = "alternative_role"
    INTERVIEW_QUESTIONS = "interview_questions"


class LimitKind(str, enum.Enum):
    COUNT = "count"  # invocations per calendar month
    DURATION = "duration"  # months of subscription access


@dataclass(frozen=True)
class FeatureSpec:
    key: FeatureKey
    role: Role
    kind: LimitKind
    display_name: str


FEATURES: Tuple[FeatureSpec, ...] = (
    FeatureSpec(FeatureKey.ROLE_SUGGESTION, Role.STUDENT, LimitKind.COUNT, "Role Suggestion"),
    FeatureSpec(FeatureKey.INTERVIEW_PREP, Role.STUDENT, LimitKind.COUNT, "Interview Preps"),
    FeatureSpec(FeatureKey.ATS_ANALYZE, Role.STUDENT, LimitKind.DURATION, "ATS Analyze"),
    FeatureSpec(FeatureKey.RESUME_GENERATE, Role.STUDENT, LimitKind.COUNT, "Resume"),
    FeatureSpec(FeatureKey.JOB_PREDICTION, Role.COMPANY, LimitKind.COUNT, "Job Prediction"),
    FeatureSpec(FeatureKey.ALTERNATIVE_ROLE, Role.COMPANY, LimitKind.COUNT, "Alternative Role"),
    FeatureSpec(FeatureKey.INTERVIEW_QUESTIONS, Role.COMPANY, LimitKind.COUNT, "Interview Questions"),
)

# Limits per (role, plan), matching the pricing cards
PLAN_LIMITS: Dict[Role, Dict[PlanTier, Dict[FeatureKey, int]]] = {
    Role.STUDENT: {
        PlanTier.FREE: {
            FeatureKey.ROLE_SUGGESTION: 1,
            FeatureKey.INTERVIEW_PREP: 5,
            FeatureKey.ATS_ANALYZE: 1,
            FeatureKey.RESUME_GENERATE: 1,
        },
        PlanTier.BASIC: {
            FeatureKey.ROLE_SUGGESTION: 3,
            FeatureKey.INTERVIEW_PREP: 15,
            FeatureKey.ATS_ANALYZE: 5,
            FeatureKey.RESUME_GENERATE: 5,
        },
        PlanTier.PRO: {
            FeatureKey.ROLE_SUGGESTION: 5,
            FeatureKey.INTERVIEW_PREP: 45,
            FeatureKey.ATS_ANALYZE: 15,
            FeatureKey.RESUME_GENERATE: 15,
        },
    },
    Role.COMPANY: {
        PlanTier.FREE: {
            FeatureKey.JOB_PREDICTION: 5,
            FeatureKey.ALTERNATIVE_ROLE: 5,
            FeatureKey.INTERVIEW_QUESTIONS: 5,
        },
        PlanTier.GROWTH: {
            FeatureKey.JOB_PREDICTION: 10,
            FeatureKey.ALTERNATIVE_ROLE: 10,
            FeatureKey.INTERVIEW_QUESTIONS: 10,
        },
        PlanTier.ENTERPRISE: {
            FeatureKey.JOB_PREDICTION: 20,
            FeatureKey.ALTERNATIVE_ROLE: 20,
            FeatureKey.INTERVIEW_QUESTIONS: 20,
        },
    },
}

# Monthly list price per paid plan, used to infer a missing plan from an amount
PLAN_PRICES: Dict[Role, Dict[PlanTier, float]] = {
    Role.STUDENT: {PlanTier.BASIC: 5, PlanTier.PRO: 15},
    Role.COMPANY: {PlanTier.GROWTH: 15, PlanTier.ENTERPRISE: 25},
}


def parse_plan(value: Optional[str]) -> Optional[PlanTier]:
    """Map a stored plan string to a PlanTier. Empty or unknown values give None."""
    if not value or not value.strip():
        return None
    try:
        return PlanTier(value.strip().lower())
    except ValueError:
        return None


class PlanCatalog:
    """
    Immutable (plan, role, feature) -> limit lookup.

    limit_for() is total over the enumerated domain: anything not explicitly
    configured is 0.
    """

    def __init__(
        self,
        limits: Mapping[Role, Mapping[PlanTier, Mapping[FeatureKey, int]]],
        features: Tuple[FeatureSpec, ...],
        prices: Optional[Mapping[Role, Mapping[PlanTier, float]]] = None,
    ):
        self._limits = MappingProxyType({
            (role, plan, feature): int(limit)
            for role, plans in limits.items()
            for plan, feature_limits in plans.items()
            for feature, limit in feature_limits.items()
        })
        self._features = MappingProxyType({spec.key: spec for spec in features})
        self._prices = MappingProxyType({
            (role, plan): float(price)
            for role, plans in (prices or {}).items()
            for plan, price in plans.items()
        })

    def limit_for(self, plan: PlanTier, role: Role, feature: FeatureKey) -> int:
        spec = self._features.get(feature)
        if spec is None or spec.role != role:
            return 0
        return max(0, self._limits.get((role, plan, feature), 0))

    def feature(self, feature: FeatureKey) -> FeatureSpec:
        return self._features[feature]

    def kind_of(self, feature: FeatureKey) -> LimitKind:
        return self._features[feature].kind

    def role_of(self, feature: FeatureKey) -> Role:
        return self._features[feature].role

    def features_for_role(self, role: Role) -> List[FeatureKey]:
        return [key for key, spec in self._features.items() if spec.role == role]

    def limits_for(self, plan: PlanTier, role: Role) -> Dict[FeatureKey, int]:
        """Get all limits for a plan and role."""
        return {feature: self.limit_for(plan, role, feature) for feature in self.features_for_role(role)}

    def plan_for_amount(self, role: Role, amount: float) -> Optional[PlanTier]:
        """Infer the paid plan whose list price matches amount for this role."""
        for (price_role, plan), price in self._prices.items():
            if price_role == role and abs(price - float(amount)) < 0.005:
                return plan
        return None


def build_default_catalog() -> PlanCatalog:
    return PlanCatalog(PLAN_LIMITS, FEATURES, PLAN_PRICES)
