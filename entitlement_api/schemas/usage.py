"""
Pydantic schemas for usage and plan endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class UsageCheckResponse(BaseModel):
    """Admission decision for one feature."""
    allowed: bool
    current: int = Field(..., description="Uses this month, or months subscribed for duration features")
    limit: int = Field(..., description="Plan limit; 0 means unavailable on this plan")
    plan: str
    message: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "allowed": False,
                "current": 15,
                "limit": 15,
                "plan": "basic",
                "message": "You have reached your monthly limit of 15 for this feature. "
                           "Your limit will reset next month, or upgrade your plan for higher limits."
            }
        }


class UsageRecordResponse(UsageCheckResponse):
    """Decision plus the counter value after recording."""
    recorded: Optional[int] = Field(None, description="Counter after the increment; null when nothing was counted")


class FeatureUsage(BaseModel):
    feature: str
    display_name: str
    kind: str
    current: int
    limit: int
    percentage: int


class UsageOverviewResponse(BaseModel):
    plan: str
    month: str = Field(..., description="Billing month in YYYY-MM format")
    usage: List[FeatureUsage]

    class Config:
        json_schema_extra = {
            "example": {
                "plan": "free",
                "month": "2025-05",
                "usage": [
                    {
                        "feature": "interview_prep",
                        "display_name": "Interview Preps",
                        "kind": "count",
                        "current": 2,
                        "limit": 5,
                        "percentage": 40
                    }
                ]
            }
        }


class PlanStatusResponse(BaseModel):
    plan: str
    is_expired: bool
    is_active: bool
    expires_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    auto_renew: bool
    tran_id: Optional[str] = None


class FixedTransaction(BaseModel):
    tran_id: str
    amount: float
    plan: str


class FixPlanResponse(BaseModel):
    fixed: int
    transactions: List[FixedTransaction]
