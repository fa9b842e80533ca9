"""
Pydantic schemas for PayWay and subscription endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class CreateCheckoutRequest(BaseModel):
    """Request schema for creating a PayWay checkout."""
    amount: float = Field(..., gt=0, description="Charge amount in the configured currency")
    plan: Optional[str] = Field(None, description="Paid plan: basic, pro, growth or enterprise. Omit for a one-off payment")
    continue_success_url: Optional[str] = Field(None, description="Where PayWay sends the user after payment; tran_id is appended")
    cancel_url: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "amount": 5,
                "plan": "basic",
                "continue_success_url": "http://localhost:3000/dashboard/settings?success=true",
                "cancel_url": "http://localhost:3000/dashboard/settings?canceled=true"
            }
        }


class CreateCheckoutResponse(BaseModel):
    url: str = Field(..., description="PayWay hosted checkout URL")
    tran_id: str


class TransactionRequest(BaseModel):
    """Request body naming one of the caller's transactions."""
    tran_id: Optional[str] = Field(None, description="Defaults to the caller's latest pending transaction where supported")

    class Config:
        json_schema_extra = {
            "example": {
                "tran_id": "20250501093000123456"
            }
        }


class TransactionResponse(BaseModel):
    tran_id: str
    status: str
    plan: Optional[str] = None
    amount: float
    currency: str
    expires_at: Optional[datetime] = None
    auto_renew: bool
    next_billing_date: Optional[datetime] = None
    payment_status_message: Optional[str] = None

    class Config:
        from_attributes = True


class CheckTransactionResponse(BaseModel):
    tran_id: str
    status: str = Field(..., description="Provider status mapped to pending, completed or failed")
    payment_status_message: Optional[str] = None
    provider_response: Dict[str, Any]


class RenewalItem(BaseModel):
    user_id: str
    old_tran_id: str
    plan: Optional[str] = None
    amount: float
    status: str
    new_tran_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class RenewalReportResponse(BaseModel):
    success: bool = True
    processed: int
    renewals: List[RenewalItem]
