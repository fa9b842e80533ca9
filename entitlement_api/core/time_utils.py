"""
Clock helpers shared by the ledger, the evaluator and the transaction store.

All timestamps are stored as naive UTC datetimes.
"""
import calendar
from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from entitlement_api.core import config


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _reference_tz(tz_name: Optional[str] = None) -> tzinfo:
    name = tz_name or config.BILLING_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def month_key(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
    """
    Calendar month in the billing reference timezone, as "YYYY-MM".

    Naive datetimes are taken to be UTC.
    """
    if now is None:
        now = utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_reference_tz(tz_name)).strftime("%Y-%m")


def add_one_month(value: datetime) -> datetime:
    """
    Same day and time next month, clamped to the last day of a shorter month
    (Jan 31 -> Feb 28/29).
    """
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))
