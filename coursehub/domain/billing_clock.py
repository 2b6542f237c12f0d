"""Calendar arithmetic for billing periods. No I/O."""

from datetime import datetime, timedelta, timezone

from dateutil.relativedelta import relativedelta

from .models import PeriodType

GRACE_WINDOW = timedelta(days=7)

_MONTHS_BY_PERIOD = {
    PeriodType.ONE_MONTH: 1,
    PeriodType.THREE_MONTHS: 3,
    PeriodType.SIX_MONTHS: 6,
    PeriodType.TWELVE_MONTHS: 12,
}


def months_for(period_type: PeriodType) -> int:
    return _MONTHS_BY_PERIOD[PeriodType(period_type)]


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length (Jan 31 + 1 -> Feb 28/29)."""
    return value + relativedelta(months=months)


def next_billing_date(end_date: datetime) -> datetime:
    return end_date - GRACE_WINDOW


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
