"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from entitlement_api.db.models.usage import UsageRecord
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.db.models.subscription import Subscription

__all__ = [
    "UsageRecord",
    "Transaction",
    "TransactionStatus",
    "Subscription",
]
