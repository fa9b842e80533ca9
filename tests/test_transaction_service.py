"""
Unit tests for the transaction store and its state machine.
"""
from datetime import datetime, timedelta

import pytest

from entitlement_api.core.exceptions import (
    BillingValidationError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from entitlement_api.core.plan_catalog import Role
from entitlement_api.core.time_utils import add_one_month
from entitlement_api.db.models.subscription import Subscription
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.services import transaction_service


NOW = datetime(2025, 5, 20, 12, 30, 15, 123000)


def test_tran_id_format():
    tran_id = transaction_service.generate_tran_id(NOW)

    assert len(tran_id) == 20
    assert tran_id.isdigit()
    assert tran_id.startswith("20250520123015123")


def test_tran_ids_are_time_ordered():
    earlier = transaction_service.generate_tran_id(NOW)
    later = transaction_service.generate_tran_id(NOW + timedelta(milliseconds=1))
    assert earlier[:17] < later[:17]


def test_add_one_month_clamps_short_months():
    assert add_one_month(datetime(2025, 1, 31, 9, 0)) == datetime(2025, 2, 28, 9, 0)
    assert add_one_month(datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert add_one_month(datetime(2025, 12, 15)) == datetime(2026, 1, 15)


def test_create_pending_with_plan(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)

    assert transaction.status == "pending"
    assert transaction.plan == "basic"
    assert transaction.currency == "USD"
    assert transaction.expires_at == datetime(2025, 6, 20, 12, 30, 15, 123000)
    assert transaction.auto_renew is True
    assert transaction.next_billing_date == transaction.expires_at


def test_create_pending_one_off_payment(db):
    transaction = transaction_service.create_pending(db, "user-1", 3.5, now=NOW)

    assert transaction.plan is None
    assert transaction.expires_at is None
    assert transaction.auto_renew is False
    assert transaction.next_billing_date is None


@pytest.mark.parametrize("amount,plan", [(0, "basic"), (-5, None), (5, "free"), (5, "platinum")])
def test_create_pending_rejects_invalid_input(db, amount, plan):
    with pytest.raises(BillingValidationError):
        transaction_service.create_pending(db, "user-1", amount, plan=plan, now=NOW)
    assert db.query(Transaction).count() == 0


def test_complete_updates_subscription(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)

    completed = transaction_service.mark_completed(db, transaction.tran_id, now=NOW + timedelta(minutes=2))

    assert completed.status == "completed"
    subscription = db.query(Subscription).filter(Subscription.user_id == "user-1").one()
    assert subscription.current_plan == "basic"
    assert subscription.current_tran_id == transaction.tran_id
    assert subscription.expires_at == transaction.expires_at
    assert subscription.renewal_chain == []


def test_renewal_chain_grows_on_each_completion(db):
    first = transaction_service.create_pending(db, "user-1", 5, plan="basic", tran_id="20250520000000000001", now=NOW)
    transaction_service.mark_completed(db, first.tran_id, now=NOW)
    second = transaction_service.create_pending(db, "user-1", 15, plan="pro", tran_id="20250620000000000001",
                                                now=NOW + timedelta(days=31))
    transaction_service.mark_completed(db, second.tran_id, now=NOW + timedelta(days=31))

    subscription = db.query(Subscription).filter(Subscription.user_id == "user-1").one()
    assert subscription.current_plan == "pro"
    assert subscription.current_tran_id == "20250620000000000001"
    assert subscription.renewal_chain == ["20250520000000000001"]


def test_completion_refreshes_stale_expiry(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    paid_at = NOW + timedelta(days=40)

    completed = transaction_service.mark_completed(db, transaction.tran_id, now=paid_at, transaction_date=paid_at)

    assert completed.expires_at == add_one_month(paid_at)
    assert completed.transaction_date == paid_at


def test_one_off_completion_leaves_subscription_alone(db):
    transaction = transaction_service.create_pending(db, "user-1", 2, now=NOW)
    transaction_service.mark_completed(db, transaction.tran_id, now=NOW)
    assert db.query(Subscription).count() == 0


def test_terminal_states_cannot_change(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    transaction_service.mark_failed(db, transaction.tran_id, now=NOW)

    with pytest.raises(InvalidTransitionError) as exc_info:
        transaction_service.mark_completed(db, transaction.tran_id, now=NOW)

    assert exc_info.value.current == "failed"
    assert exc_info.value.target == "completed"


def test_repeating_the_same_transition_is_a_no_op(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    transaction_service.mark_completed(db, transaction.tran_id, now=NOW)

    again = transaction_service.mark_completed(db, transaction.tran_id, now=NOW + timedelta(hours=1))

    assert again.status == "completed"
    subscription = db.query(Subscription).one()
    assert subscription.renewal_chain == []


def test_unknown_transaction(db):
    with pytest.raises(TransactionNotFoundError):
        transaction_service.mark_failed(db, "00000000000000000000")


def test_get_transaction_is_scoped_to_user(db, make_transaction):
    make_transaction(user_id="user-1", tran_id="20250101000000000001")

    with pytest.raises(TransactionNotFoundError):
        transaction_service.get_transaction(db, "20250101000000000001", user_id="someone-else")


def test_latest_pending(db, make_transaction):
    make_transaction(tran_id="20250101000000000001", status="pending", created_at=datetime(2025, 5, 1))
    make_transaction(tran_id="20250101000000000002", status="pending", created_at=datetime(2025, 5, 2))
    make_transaction(tran_id="20250101000000000003", status="completed", created_at=datetime(2025, 5, 3))

    assert transaction_service.latest_pending(db, "user-1").tran_id == "20250101000000000002"
    assert transaction_service.latest_pending(db, "user-2") is None


def test_cancel_auto_renew(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    transaction_service.mark_completed(db, transaction.tran_id, now=NOW)

    cancelled = transaction_service.cancel_auto_renew(db, "user-1", transaction.tran_id, now=NOW)

    assert cancelled.auto_renew is False
    assert cancelled.next_billing_date is None
    assert cancelled.expires_at is not None
    assert db.query(Subscription).one().auto_renew is False


def test_cancel_requires_completed_transaction(db):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    with pytest.raises(BillingValidationError):
        transaction_service.cancel_auto_renew(db, "user-1", transaction.tran_id, now=NOW)


def test_downgrade_to_free_expires_now(db, service):
    transaction = transaction_service.create_pending(db, "user-1", 5, plan="basic", now=NOW)
    transaction_service.mark_completed(db, transaction.tran_id, now=NOW)
    downgrade_at = NOW + timedelta(days=3)

    downgraded = transaction_service.downgrade_to_free(db, "user-1", transaction.tran_id, now=downgrade_at)

    assert downgraded.expires_at == downgrade_at
    assert downgraded.auto_renew is False
    assert service.resolve_plan(db, "user-1", downgrade_at + timedelta(seconds=1)).plan.value == "free"


def test_fix_missing_plans(db, catalog, make_transaction):
    make_transaction(tran_id="20250101000000000001", plan=None, amount=5, created_at=datetime(2025, 1, 1))
    make_transaction(tran_id="20250101000000000002", plan="", amount=15, created_at=datetime(2025, 2, 1))
    make_transaction(tran_id="20250101000000000003", plan=None, amount=7)
    make_transaction(tran_id="20250101000000000004", plan=None, amount=5, status=TransactionStatus.PENDING.value)

    fixed = transaction_service.fix_missing_plans(db, "user-1", Role.STUDENT, catalog, now=NOW)

    assert fixed == [
        {"tran_id": "20250101000000000001", "amount": 5.0, "plan": "basic"},
        {"tran_id": "20250101000000000002", "amount": 15.0, "plan": "pro"},
    ]
    unmatched = db.query(Transaction).filter(Transaction.tran_id == "20250101000000000003").one()
    assert unmatched.plan is None


def test_late_confirmation_of_older_purchase_keeps_newer_plan(db, service):
    basic = transaction_service.create_pending(db, "user-1", 5, plan="basic", tran_id="20250501000000000001",
                                               now=datetime(2025, 5, 1))
    pro = transaction_service.create_pending(db, "user-1", 15, plan="pro", tran_id="20250502000000000001",
                                             now=datetime(2025, 5, 2))

    transaction_service.mark_completed(db, pro.tran_id, now=datetime(2025, 5, 2, 1))
    transaction_service.mark_completed(db, basic.tran_id, now=datetime(2025, 5, 3))

    subscription = db.query(Subscription).one()
    assert subscription.current_tran_id == pro.tran_id
    assert subscription.renewal_chain == [basic.tran_id]
    state = service.resolve_plan(db, "user-1", datetime(2025, 5, 10))
    assert state.plan.value == "pro"
    assert state.months_subscribed == 2


def test_fix_missing_plans_moves_subscription(db, catalog, service, make_transaction):
    basic = transaction_service.create_pending(db, "user-1", 5, plan="basic", tran_id="20250101000000000009",
                                               now=datetime(2025, 1, 1))
    transaction_service.mark_completed(db, basic.tran_id, now=datetime(2025, 1, 1))
    transaction_service.cancel_auto_renew(db, "user-1", basic.tran_id, now=datetime(2025, 1, 2))
    make_transaction(tran_id="20250301000000000001", plan=None, amount=15, auto_renew=False,
                     created_at=datetime(2025, 3, 1))
    assert service.resolve_plan(db, "user-1", datetime(2025, 3, 5)).plan.value == "free"

    fixed = transaction_service.fix_missing_plans(db, "user-1", Role.STUDENT, catalog, now=datetime(2025, 3, 5))

    assert [item["plan"] for item in fixed] == ["pro"]
    subscription = db.query(Subscription).one()
    assert subscription.current_tran_id == "20250301000000000001"
    assert subscription.renewal_chain == [basic.tran_id]
    assert service.resolve_plan(db, "user-1", datetime(2025, 3, 5)).plan.value == "pro"
