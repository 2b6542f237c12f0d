"""Subscription domain model granting paid access to a course or a period plan."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class SubscriptionType(str, Enum):
    COURSE = "course"
    PERIOD = "period"


class PeriodType(str, Enum):
    ONE_MONTH = "1_month"
    THREE_MONTHS = "3_months"
    SIX_MONTHS = "6_months"
    TWELVE_MONTHS = "12_months"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


SEAT_HOLDING_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)


class AccessState(str, Enum):
    ACTIVE = "active"
    CANCELLED_GRACE = "cancelled_grace"
    NONE = "none"


@dataclass(slots=True)
class Subscription:
    """
    Subscription entity.

    Attributes:
        id: Unique identifier
        user_id: Reference to the subscribing user
        subscription_type: Whether access is scoped to a course or to a period
        course_id: Course reference, present only for course subscriptions
        period_type: Billing period, required for period subscriptions
        start_date: Start of access
        end_date: End of access, always after start_date
        status: Lifecycle status (pending, active, cancelled, expired)
        version: Optimistic concurrency counter bumped on every write
        expiry_warning_sent_at: When the last "expiring soon" warning went out
        grace_access: Set by a soft cancel of an active record; access then lasts until end_date
    """

    id: int
    user_id: int
    subscription_type: SubscriptionType
    course_id: Optional[int]
    period_type: Optional[PeriodType]
    start_date: datetime
    end_date: datetime
    status: SubscriptionStatus
    price: Decimal
    currency: str
    created_at: datetime
    updated_at: datetime
    discount_amount: Optional[Decimal] = None
    discount_code: Optional[str] = None
    is_paid: bool = False
    payment_method: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    auto_renewal: bool = False
    next_billing_date: Optional[datetime] = None
    progress_percentage: float = 0.0
    completed_lessons: int = 0
    total_lessons: int = 0
    last_accessed: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    email_notifications: bool = True
    notes: Optional[str] = None
    expiry_warning_sent_at: Optional[datetime] = None
    grace_access: bool = False
    version: int = 1

    @property
    def is_course(self) -> bool:
        return self.subscription_type is SubscriptionType.COURSE

    @property
    def holds_seat(self) -> bool:
        """A course subscription occupies a seat while pending or active."""
        return self.is_course and self.course_id is not None and self.status in SEAT_HOLDING_STATUSES

    def access_state(self, now: datetime) -> AccessState:
        if not self.start_date <= now < self.end_date:
            return AccessState.NONE
        if self.status is SubscriptionStatus.ACTIVE:
            return AccessState.ACTIVE
        if self.status is SubscriptionStatus.CANCELLED and self.grace_access:
            return AccessState.CANCELLED_GRACE
        return AccessState.NONE

    def has_access(self, now: datetime) -> bool:
        return self.access_state(now) is not AccessState.NONE

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} user_id={self.user_id} "
            f"type={self.subscription_type.value} status={self.status.value}>"
        )
