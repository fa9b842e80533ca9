from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from entitlement_api.db.base import Base


class Subscription(Base):
    """
    Authoritative per-user subscription state.

    Maintained by the transaction store whenever a paid transaction completes
    or the user cancels/downgrades, so entitlement checks read one row instead
    of scanning transaction history.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)

    current_plan = Column(String(32), nullable=False, default="free")  # PlanTier value
    current_tran_id = Column(String(20), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    renewal_chain = Column(JSON, nullable=False, default=list)  # prior tran_ids, oldest first

    updated_at = Column(DateTime, server_default=func.now(), nullable=False)
