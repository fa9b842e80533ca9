"""
Transaction store and status state machine.

pending -> completed, pending -> failed. Both outcomes are terminal. Status
writes run under the retry policy; the gateway call that precedes them does not.
"""
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from entitlement_api.core import config
from entitlement_api.core.exceptions import (
    BillingValidationError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from entitlement_api.core.plan_catalog import PlanCatalog, PlanTier, Role, parse_plan
from entitlement_api.core.retry import with_retry
from entitlement_api.core.time_utils import add_one_month, utcnow
from entitlement_api.db.models.subscription import Subscription
from entitlement_api.db.models.transaction import Transaction, TransactionStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
}


def generate_tran_id(now: Optional[datetime] = None) -> str:
    """
    Build a numeric, time-ordered transaction id.

    Format: YYYYMMDDHHMMSS + 3-digit milliseconds + 3 random digits (20 chars).
    """
    now = now or utcnow()
    return f"{now:%Y%m%d%H%M%S}{now.microsecond // 1000:03d}{secrets.randbelow(1000):03d}"


def request_time(now: Optional[datetime] = None) -> str:
    """PayWay req_time: UTC YYYYMMDDHHMMSS."""
    return f"{(now or utcnow()):%Y%m%d%H%M%S}"


def normalize_plan(plan: Optional[Union[PlanTier, str]]) -> Optional[PlanTier]:
    """Validate a requested paid plan. None/empty means a one-off payment."""
    if plan is None or (isinstance(plan, str) and not plan.strip()):
        return None
    tier = parse_plan(plan.value if isinstance(plan, PlanTier) else plan)
    if tier is None or tier == PlanTier.FREE:
        raise BillingValidationError(f"Invalid plan: {plan}")
    return tier


def get_transaction(db: Session, tran_id: str, user_id: Optional[str] = None) -> Transaction:
    def load() -> Optional[Transaction]:
        query = db.query(Transaction).filter(Transaction.tran_id == tran_id)
        if user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
        return query.first()

    transaction = with_retry(load, before_retry=db.rollback)
    if transaction is None:
        raise TransactionNotFoundError(tran_id)
    return transaction


def latest_pending(db: Session, user_id: str) -> Optional[Transaction]:
    """Most recent pending transaction for a user."""
    return with_retry(
        lambda: db.query(Transaction)
        .filter(Transaction.user_id == user_id, Transaction.status == TransactionStatus.PENDING.value)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .first(),
        before_retry=db.rollback,
    )


def create_pending(
    db: Session,
    user_id: str,
    amount: float,
    plan: Optional[Union[PlanTier, str]] = None,
    currency: Optional[str] = None,
    tran_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """
    Insert a pending transaction before the gateway is contacted.

    Paid plans get a one-month expiry with auto-renew on; one-off payments get
    no expiry and auto-renew off.
    """
    if not user_id:
        raise BillingValidationError("user_id is required")
    if amount is None or float(amount) <= 0:
        raise BillingValidationError("amount must be greater than zero")

    tier = normalize_plan(plan)
    now = now or utcnow()
    expires_at = add_one_month(now) if tier else None

    transaction = Transaction(
        user_id=user_id,
        tran_id=tran_id or generate_tran_id(now),
        amount=float(amount),
        currency=currency or config.DEFAULT_CURRENCY,
        plan=tier.value if tier else None,
        status=TransactionStatus.PENDING.value,
        expires_at=expires_at,
        auto_renew=tier is not None,
        next_billing_date=expires_at,
        created_at=now,
        updated_at=now,
    )

    def insert() -> Transaction:
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
        return transaction

    with_retry(insert, before_retry=db.rollback)
    logger.info(
        f"Transaction created: tran_id={transaction.tran_id}, user_id={user_id}, "
        f"amount={transaction.amount} {transaction.currency}, plan={transaction.plan}"
    )
    return transaction


def _transition(
    db: Session,
    tran_id: str,
    target: TransactionStatus,
    now: datetime,
    apply=None,
) -> Transaction:
    def write() -> Transaction:
        transaction = db.query(Transaction).filter(Transaction.tran_id == tran_id).first()
        if transaction is None:
            raise TransactionNotFoundError(tran_id)

        current = TransactionStatus(transaction.status)
        if current == target:
            return transaction
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(tran_id, current.value, target.value)

        transaction.status = target.value
        transaction.updated_at = now
        if apply is not None:
            apply(transaction)
        db.commit()
        db.refresh(transaction)
        return transaction

    transaction = with_retry(write, before_retry=db.rollback)
    logger.info(f"Transaction {tran_id} -> {target.value}")
    return transaction


def mark_failed(db: Session, tran_id: str, now: Optional[datetime] = None) -> Transaction:
    return _transition(db, tran_id, TransactionStatus.FAILED, now or utcnow())


def mark_completed(
    db: Session,
    tran_id: str,
    now: Optional[datetime] = None,
    transaction_date: Optional[datetime] = None,
    payment_status_message: Optional[str] = None,
    gateway_payload: Optional[Dict[str, Any]] = None,
) -> Transaction:
    """
    Apply an inbound payment confirmation.

    A paid plan's access window starts at the payment date. The subscription
    aggregate is moved onto this transaction in the same commit.
    """
    now = now or utcnow()

    def apply(transaction: Transaction) -> None:
        if transaction_date is not None:
            transaction.transaction_date = transaction_date
        if payment_status_message is not None:
            transaction.payment_status_message = payment_status_message
        if gateway_payload is not None:
            transaction.gateway_payload = gateway_payload
        if parse_plan(transaction.plan):
            paid_at = transaction_date or now
            if transaction.expires_at is None or transaction.expires_at < paid_at:
                transaction.expires_at = add_one_month(paid_at)
            if transaction.auto_renew:
                transaction.next_billing_date = transaction.expires_at
            _apply_to_subscription(db, transaction, now)

    return _transition(db, tran_id, TransactionStatus.COMPLETED, now, apply)


def _recency(transaction: Transaction):
    return (transaction.created_at or datetime.min, transaction.id or 0)


def _apply_to_subscription(db: Session, transaction: Transaction, now: datetime) -> None:
    """
    Point the user's subscription at transaction unless it already tracks a
    newer purchase. An older confirmation only joins the renewal chain.
    """
    subscription = db.query(Subscription).filter(Subscription.user_id == transaction.user_id).first()
    if subscription is None:
        subscription = Subscription(user_id=transaction.user_id, renewal_chain=[])
        db.add(subscription)

    chain = list(subscription.renewal_chain or [])
    current_id = subscription.current_tran_id

    if current_id and current_id != transaction.tran_id:
        current = db.query(Transaction).filter(Transaction.tran_id == current_id).first()
        if current is not None and _recency(current) > _recency(transaction):
            if transaction.tran_id not in chain:
                chain.append(transaction.tran_id)
            subscription.renewal_chain = chain
            subscription.updated_at = now
            logger.info(
                f"Late confirmation for {transaction.tran_id}; subscription stays on newer {current_id}"
            )
            return
        if current_id not in chain:
            chain.append(current_id)

    subscription.current_plan = transaction.plan
    subscription.current_tran_id = transaction.tran_id
    subscription.expires_at = transaction.expires_at
    subscription.auto_renew = bool(transaction.auto_renew)
    subscription.renewal_chain = chain
    subscription.updated_at = now


def _repoint_subscription(db: Session, user_id: str, now: datetime) -> None:
    """Move an existing subscription onto the latest completed transaction with a plan."""
    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if subscription is None:
        return
    latest = (
        db.query(Transaction)
        .filter(
            Transaction.user_id == user_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.plan.isnot(None),
            func.trim(Transaction.plan) != "",
        )
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .first()
    )
    if latest is not None and latest.tran_id != subscription.current_tran_id:
        _apply_to_subscription(db, latest, now)


def _completed_for_user(db: Session, user_id: str, tran_id: str) -> Transaction:
    transaction = get_transaction(db, tran_id, user_id=user_id)
    if transaction.status != TransactionStatus.COMPLETED.value:
        raise BillingValidationError("Only completed subscriptions can be changed")
    return transaction


def _sync_subscription_flags(db: Session, transaction: Transaction, now: datetime) -> None:
    subscription = db.query(Subscription).filter(
        Subscription.user_id == transaction.user_id,
        Subscription.current_tran_id == transaction.tran_id,
    ).first()
    if subscription is not None:
        subscription.auto_renew = bool(transaction.auto_renew)
        subscription.expires_at = transaction.expires_at
        subscription.updated_at = now


def cancel_auto_renew(db: Session, user_id: str, tran_id: str, now: Optional[datetime] = None) -> Transaction:
    """Stop renewing a completed subscription; access runs until expires_at."""
    now = now or utcnow()
    transaction = _completed_for_user(db, user_id, tran_id)

    def write() -> Transaction:
        transaction.auto_renew = False
        transaction.next_billing_date = None
        transaction.updated_at = now
        _sync_subscription_flags(db, transaction, now)
        db.commit()
        db.refresh(transaction)
        return transaction

    with_retry(write, before_retry=db.rollback)
    logger.info(f"Auto-renew cancelled: user_id={user_id}, tran_id={tran_id}")
    return transaction


def downgrade_to_free(db: Session, user_id: str, tran_id: str, now: Optional[datetime] = None) -> Transaction:
    """Cancel auto-renew and expire the subscription immediately."""
    now = now or utcnow()
    transaction = _completed_for_user(db, user_id, tran_id)

    def write() -> Transaction:
        transaction.auto_renew = False
        transaction.next_billing_date = None
        transaction.expires_at = now
        transaction.updated_at = now
        _sync_subscription_flags(db, transaction, now)
        db.commit()
        db.refresh(transaction)
        return transaction

    with_retry(write, before_retry=db.rollback)
    logger.info(f"Downgraded to free: user_id={user_id}, tran_id={tran_id}")
    return transaction


def fix_missing_plans(
    db: Session,
    user_id: str,
    role: Union[Role, str],
    catalog: PlanCatalog,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Backfill plan on completed transactions that were stored without one,
    inferring it from the amount and the user's role.

    Returns:
        List of {tran_id, amount, plan} for each repaired transaction
    """
    role = Role(role)
    now = now or utcnow()

    def repair() -> List[Dict[str, Any]]:
        candidates = (
            db.query(Transaction)
            .filter(
                Transaction.user_id == user_id,
                Transaction.status == TransactionStatus.COMPLETED.value,
                or_(Transaction.plan.is_(None), func.trim(Transaction.plan) == ""),
            )
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            .all()
        )

        repaired = []
        for transaction in candidates:
            inferred = catalog.plan_for_amount(role, transaction.amount)
            if inferred is None:
                continue
            transaction.plan = inferred.value
            transaction.updated_at = now
            repaired.append({"tran_id": transaction.tran_id, "amount": transaction.amount, "plan": inferred.value})

        if repaired:
            db.flush()
            _repoint_subscription(db, user_id, now)
            db.commit()
        return repaired

    fixed = with_retry(repair, before_retry=db.rollback)
    if fixed:
        logger.info(f"Inferred plan for {len(fixed)} transaction(s): user_id={user_id}")
    return fixed
