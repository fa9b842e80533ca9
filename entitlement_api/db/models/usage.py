from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from datetime import datetime
from typing import Optional
from entitlement_api.db.base import Base
from entitlement_api.core.time_utils import month_key


class UsageRecord(Base):
    """
    Per-user, per-feature, per-calendar-month usage counter.

    One row per (user_id, feature, month). count only ever goes up within a
    month; a new month gets a new row instead of resetting the old one.
    limit is a snapshot of the plan limit at the last increment.
    """
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    feature = Column(String(64), nullable=False)  # FeatureKey value
    month = Column(String(7), nullable=False)  # "YYYY-MM"
    count = Column(Integer, nullable=False, default=0)
    limit = Column("limit", Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "feature", "month", name="uq_usage_user_feature_month"),
        Index("idx_usage_user_month", "user_id", "month"),
    )

    @staticmethod
    def get_month_key(date: Optional[datetime] = None) -> str:
        """Generate month string in YYYY-MM format for the billing timezone."""
        return month_key(date)
