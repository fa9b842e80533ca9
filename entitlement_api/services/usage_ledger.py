"""
Usage ledger: per-user, per-feature, per-month counters for count-based features.

The increment is a single upsert statement (count = count + 1) so concurrent
requests never lose an update. Checking and recording are separate calls;
see entitlement_service for the admission decision.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_api.core.plan_catalog import FeatureKey
from entitlement_api.core.time_utils import utcnow
from entitlement_api.db.models.usage import UsageRecord

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class UsageSnapshot:
    count: int
    limit: int


def _feature_value(feature: Union[FeatureKey, str]) -> str:
    return FeatureKey(feature).value


def current_usage(
    db: Session,
    user_id: str,
    feature: Union[FeatureKey, str],
    month: str,
) -> UsageSnapshot:
    """
    Read the counter for one user/feature/month.

    Returns UsageSnapshot(0, 0) when the month has no record yet. The caller
    must use the current plan's limit for admission, not the stored snapshot.
    """
    record = db.execute(
        select(UsageRecord).where(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == _feature_value(feature),
            UsageRecord.month == month,
        )
    ).scalar_one_or_none()

    if record is None:
        return UsageSnapshot(count=0, limit=0)
    return UsageSnapshot(count=record.count, limit=record.limit)


def month_usage(db: Session, user_id: str, month: str) -> Dict[str, int]:
    """
    Get per-feature counts for a user in a given month.

    Returns:
        Dictionary mapping feature values to counts (features without a record are absent)
    """
    rows = db.execute(
        select(UsageRecord.feature, UsageRecord.count).where(
            UsageRecord.user_id == user_id,
            UsageRecord.month == month,
        )
    ).all()
    return {feature: count for feature, count in rows}


def record_use(
    db: Session,
    user_id: str,
    feature: Union[FeatureKey, str],
    month: str,
    limit: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Atomically add one use to the counter, creating the month's row on first use.

    Args:
        db: Database session
        user_id: User ID
        feature: Count-based feature
        month: Month key ("YYYY-MM")
        limit: Limit in effect now, stored as the row's snapshot

    Returns:
        The counter value after the increment
    """
    feature_value = _feature_value(feature)
    now = now or utcnow()
    dialect = db.get_bind().dialect.name

    if dialect in UPSERT_DIALECTS:
        _upsert_increment(db, UPSERT_DIALECTS[dialect], user_id, feature_value, month, limit, now)
    else:
        _update_then_insert(db, user_id, feature_value, month, limit, now)

    new_count = current_usage(db, user_id, feature_value, month).count
    logger.info(
        f"Usage recorded: user_id={user_id}, feature={feature_value}, month={month}, "
        f"count={new_count}, limit={limit}"
    )
    return new_count


def _upsert_increment(db: Session, insert_fn, user_id: str, feature: str, month: str, limit: int, now: datetime) -> None:
    stmt = insert_fn(UsageRecord).values(
        user_id=user_id,
        feature=feature,
        month=month,
        count=1,
        limit=limit,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "feature", "month"],
        set_={
            "count": UsageRecord.count + 1,
            "limit": stmt.excluded["limit"],
            "updated_at": stmt.excluded["updated_at"],
        },
    )
    try:
        db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        raise


def _update_then_insert(db: Session, user_id: str, feature: str, month: str, limit: int, now: datetime) -> None:
    """Fallback for dialects without ON CONFLICT: in-database increment, insert on miss."""

    def increment() -> int:
        return db.query(UsageRecord).filter(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == feature,
            UsageRecord.month == month,
        ).update(
            {
                UsageRecord.count: UsageRecord.count + 1,
                UsageRecord.limit: limit,
                UsageRecord.updated_at: now,
            },
            synchronize_session=False,
        )

    try:
        if increment() == 0:
            db.add(UsageRecord(
                user_id=user_id,
                feature=feature,
                month=month,
                count=1,
                limit=limit,
                created_at=now,
                updated_at=now,
            ))
        db.commit()
    except IntegrityError:
        # Another request created the row first; increment it instead
        db.rollback()
        increment()
        db.commit()
    except Exception:
        db.rollback()
        raise
