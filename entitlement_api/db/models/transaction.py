"""
Transaction model for payment attempts and their lifecycle.
"""
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON, Index
from sqlalchemy.sql import func
import enum
from entitlement_api.db.base import Base


class TransactionStatus(str, enum.Enum):
    """pending -> completed | failed. Both outcomes are terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Base):
    """
    One payment attempt, keyed externally by tran_id.

    expires_at, auto_renew and next_billing_date are only set when plan is set;
    one-off payments carry none of them. Renewals insert a new row and point the
    old one at it through superseded_by.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    tran_id = Column(String(20), nullable=False, unique=True, index=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    plan = Column(String(32), nullable=True)  # PlanTier value or NULL
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    # Recurring billing
    expires_at = Column(DateTime, nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    next_billing_date = Column(DateTime, nullable=True)

    # Renewal chain: set on the source row when a successor is created
    superseded_by = Column(String(20), nullable=True)
    renewed_at = Column(DateTime, nullable=True)

    # Provider confirmation details
    payment_status_message = Column(String, nullable=True)
    transaction_date = Column(DateTime, nullable=True)
    gateway_payload = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_transactions_user_status_created", "user_id", "status", "created_at"),
        Index("idx_transactions_renewal", "status", "auto_renew", "expires_at"),
    )
