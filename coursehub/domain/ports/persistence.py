from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import ContextManager, List, Optional, Protocol, Tuple

from ..models import Course, PeriodType, Subscription, SubscriptionStatus, SubscriptionType, User


@dataclass(slots=True)
class SubscriptionFilter:
    user_id: Optional[int] = None
    course_id: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    subscription_type: Optional[SubscriptionType] = None
    period_type: Optional[PeriodType] = None
    is_paid: Optional[bool] = None
    auto_renewal: Optional[bool] = None
    currency: Optional[str] = None
    start_date_from: Optional[datetime] = None
    start_date_to: Optional[datetime] = None


class UnitOfWork(Protocol):
    """Groups several writes into one atomic transaction."""

    def atomic(self) -> ContextManager[None]:
        ...


class SubscriptionRepository(UnitOfWork, Protocol):
    """Persistence functions related to subscription records."""

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        ...

    def update_subscription(self, subscription: Subscription, expected_version: int) -> Subscription:
        """Persist ``subscription`` if the stored version still equals ``expected_version``."""
        ...

    def delete_subscription(self, subscription_id: int) -> None:
        ...

    def find_open_course_subscription(self, user_id: int, course_id: int) -> Optional[Subscription]:
        ...

    def list_subscriptions(
        self, filters: SubscriptionFilter, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Subscription], int]:
        ...

    def list_overdue_active(self, now: datetime, after_id: int, limit: int) -> List[Subscription]:
        ...

    def list_active_ending_between(
        self, start: datetime, end: datetime, after_id: int, limit: int
    ) -> List[Subscription]:
        ...

    def count_by_status(self) -> dict:
        ...

    def count_seat_holders(self, course_id: int) -> int:
        ...

    def sum_paid_revenue(self, paid_since: Optional[datetime] = None) -> Decimal:
        ...


class UserDirectory(Protocol):
    """Read access to user accounts owned by the accounts service."""

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...


class CourseCatalog(Protocol):
    """Course lookups and the occupied-seat counter."""

    def get_course(self, course_id: int) -> Optional[Course]:
        ...

    def adjust_seat_count(self, course_id: int, delta: int) -> int:
        """Apply ``delta`` to the seat counter, never below zero. Returns the new count."""
        ...

    def set_seat_count(self, course_id: int, value: int) -> None:
        ...


class NotificationService(Protocol):
    """Delivery channel for lifecycle notifications."""

    def send_activation(self, email: str, name: str) -> bool:
        ...

    def send_cancellation(self, email: str, name: str, reason: str, immediate: bool) -> bool:
        ...

    def send_expiration(self, email: str, name: str) -> bool:
        ...

    def send_expiring_soon(self, email: str, name: str, end_date: datetime) -> bool:
        ...


class PersistenceGateway(
    SubscriptionRepository,
    UserDirectory,
    CourseCatalog,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the app."""

    pass
