"""
Shared fixtures: in-memory SQLite database and plan catalog.
"""
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from entitlement_api.core.plan_catalog import build_default_catalog
from entitlement_api.db.base import Base
from entitlement_api.db import models  # noqa: F401
from entitlement_api.db.models.subscription import Subscription
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.services.entitlement_service import EntitlementService


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def catalog():
    return build_default_catalog()


@pytest.fixture
def service(catalog):
    return EntitlementService(catalog)


def _add_transaction(db, user_id="user-1", tran_id="20250101000000000001", amount=5.0, plan="basic",
                    status=TransactionStatus.COMPLETED.value, expires_at=None, auto_renew=True,
                    created_at=datetime(2025, 1, 1)):
    """Insert a transaction row directly, bypassing the state machine."""
    transaction = Transaction(
        user_id=user_id,
        tran_id=tran_id,
        amount=amount,
        currency="USD",
        plan=plan,
        status=status,
        expires_at=expires_at,
        auto_renew=auto_renew,
        next_billing_date=expires_at if auto_renew else None,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


def _add_subscription(db, user_id="user-1", plan="basic", expires_at=None, auto_renew=True,
                     tran_id="20250101000000000001", chain=None):
    subscription = Subscription(
        user_id=user_id,
        current_plan=plan,
        current_tran_id=tran_id,
        expires_at=expires_at,
        auto_renew=auto_renew,
        renewal_chain=chain or [],
    )
    db.add(subscription)
    db.commit()
    return subscription


@pytest.fixture
def make_transaction(db):
    return lambda **kwargs: _add_transaction(db, **kwargs)


@pytest.fixture
def make_subscription(db):
    return lambda **kwargs: _add_subscription(db, **kwargs)


def override_get_db():
    """Override get_db dependency for testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def db_override():
    return override_get_db
