"""
Renewal batch: creates successor transactions for expired, auto-renewing plans.

No charge is attempted. Successors are left pending for manual payment follow-up.
Each source row is claimed (superseded_by set) in the same commit that inserts
its successor, so re-running the batch never duplicates a renewal.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from entitlement_api.core.retry import with_retry
from entitlement_api.core.time_utils import add_one_month, utcnow
from entitlement_api.db.models.transaction import Transaction, TransactionStatus
from entitlement_api.services.transaction_service import generate_tran_id

logger = logging.getLogger(__name__)

PENDING_MANUAL_PAYMENT = "pending_manual_payment"
ALREADY_RENEWED = "already_renewed"
RENEWAL_FAILED = "failed"

MAX_TRAN_ID_ATTEMPTS = 20


@dataclass
class RenewalOutcome:
    user_id: str
    old_tran_id: str
    plan: Optional[str]
    amount: float
    status: str
    new_tran_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class RenewalReport:
    processed: int = 0
    renewals: List[RenewalOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"processed": self.processed, "renewals": [asdict(r) for r in self.renewals]}


def select_due(db: Session, now: datetime) -> List[Transaction]:
    """Completed, auto-renewing, expired, with a plan, and not yet renewed."""
    return (
        db.query(Transaction)
        .filter(
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.auto_renew.is_(True),
            Transaction.expires_at <= now,
            Transaction.plan.isnot(None),
            func.trim(Transaction.plan) != "",
            Transaction.superseded_by.is_(None),
        )
        .order_by(Transaction.expires_at.asc(), Transaction.id.asc())
        .all()
    )


def _fresh_tran_id(db: Session, issued: Set[str]) -> str:
    """
    Unused tran_id stamped with the current clock, not the batch time.

    Raises:
        RuntimeError: no free id after MAX_TRAN_ID_ATTEMPTS draws
    """
    for _ in range(MAX_TRAN_ID_ATTEMPTS):
        candidate = generate_tran_id(utcnow())
        if candidate in issued:
            continue
        if db.query(Transaction.id).filter(Transaction.tran_id == candidate).first() is None:
            issued.add(candidate)
            return candidate
    raise RuntimeError(f"Could not allocate a unique tran_id after {MAX_TRAN_ID_ATTEMPTS} attempts")


def _renew_one(db: Session, source_id: int, new_tran_id: str, now: datetime) -> Optional[Transaction]:
    """Claim the source row and insert its successor in one commit. None if already claimed."""
    source = db.query(Transaction).filter(Transaction.id == source_id).first()
    claimed = (
        db.query(Transaction)
        .filter(Transaction.id == source_id, Transaction.superseded_by.is_(None))
        .update(
            {
                Transaction.superseded_by: new_tran_id,
                Transaction.renewed_at: now,
                Transaction.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not claimed:
        db.rollback()
        return None

    new_expires_at = add_one_month(now)
    successor = Transaction(
        user_id=source.user_id,
        tran_id=new_tran_id,
        amount=source.amount,
        currency=source.currency,
        plan=source.plan,
        status=TransactionStatus.PENDING.value,
        expires_at=new_expires_at,
        auto_renew=True,
        next_billing_date=new_expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(successor)
    db.commit()
    db.refresh(successor)
    return successor


def run_renewals(db: Session, now: Optional[datetime] = None) -> RenewalReport:
    """
    Process every due subscription once.

    Per-row failures are reported in the outcome list and do not stop the batch.
    """
    now = now or utcnow()
    due = with_retry(lambda: select_due(db, now), before_retry=db.rollback)
    logger.info(f"[Auto-Renew] Found {len(due)} subscriptions to renew")

    report = RenewalReport()
    issued: Set[str] = set()

    for source in due:
        source_id = source.id
        outcome = RenewalOutcome(
            user_id=source.user_id,
            old_tran_id=source.tran_id,
            plan=source.plan,
            amount=source.amount,
            status=PENDING_MANUAL_PAYMENT,
        )
        try:
            new_tran_id = _fresh_tran_id(db, issued)
            successor = with_retry(
                lambda: _renew_one(db, source_id, new_tran_id, now),
                before_retry=db.rollback,
            )
            if successor is None:
                outcome.status = ALREADY_RENEWED
                logger.info(f"[Auto-Renew] {outcome.old_tran_id} was renewed by another run, skipping")
            else:
                outcome.new_tran_id = successor.tran_id
                outcome.expires_at = successor.expires_at
                logger.info(
                    f"[Auto-Renew] Created renewal transaction {successor.tran_id} for user {successor.user_id}, "
                    f"plan {successor.plan}; manual payment required"
                )
        except Exception as e:
            db.rollback()
            outcome.status = RENEWAL_FAILED
            outcome.error = str(e)
            logger.exception(f"[Auto-Renew] Error processing renewal for transaction {outcome.old_tran_id}")

        report.renewals.append(outcome)

    report.processed = len(report.renewals)
    return report
