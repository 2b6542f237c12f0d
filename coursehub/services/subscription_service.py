"""Service for the subscription lifecycle: creation, payment, cancellation and renewal."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from ..domain import lifecycle
from ..domain.billing_clock import ensure_utc, utcnow
from ..domain.errors import BadRequestError, ConflictError, NotFoundError
from ..domain.models import (
    AccessState,
    PeriodType,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from ..domain.ports.persistence import PersistenceGateway, SubscriptionFilter
from .capacity import CapacityCoordinator
from .notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("USD", "EUR", "UAH")

Clock = Callable[[], datetime]


@dataclass(slots=True)
class SubscriptionPage:
    items: List[Subscription]
    total_items: int
    total_pages: int
    page: int
    limit: int


@dataclass(slots=True)
class SubscriptionStatistics:
    total: int
    active: int
    pending: int
    cancelled: int
    expired: int
    total_revenue: Decimal
    monthly_revenue: Decimal
    conversion_rate: float
    by_status: Dict[str, int] = field(default_factory=dict)


class SubscriptionService:
    """Coordinates subscription state transitions, seat accounting and notifications."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        capacity: CapacityCoordinator,
        notifier: NotificationDispatcher,
        *,
        clock: Clock = utcnow,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._persistence = persistence
        self._capacity = capacity
        self._notifier = notifier
        self._clock = clock
        self._logger = log or logger

    # Lifecycle -------------------------------------------------------------
    def create(
        self,
        user_id: int,
        subscription_type: SubscriptionType,
        *,
        start_date: datetime,
        end_date: datetime,
        price: Decimal,
        currency: str = "USD",
        course_id: Optional[int] = None,
        period_type: Optional[PeriodType] = None,
        discount_amount: Optional[Decimal] = None,
        discount_code: Optional[str] = None,
        payment_method: Optional[str] = None,
        auto_renewal: bool = False,
        email_notifications: bool = True,
    ) -> Subscription:
        """
        Create a pending, unpaid subscription.

        Course subscriptions claim a seat on the course in the same transaction.

        Raises:
            BadRequestError: Missing or forbidden fields, unavailable or full course
            NotFoundError: Unknown user or course
            ConflictError: The user already holds a pending or active subscription for the course
        """
        kind = self._parse_enum(SubscriptionType, subscription_type, "subscription type")
        period = self._parse_enum(PeriodType, period_type, "period type") if period_type else None
        if kind is SubscriptionType.COURSE and course_id is None:
            raise BadRequestError("courseId is required for a course subscription")
        if kind is SubscriptionType.PERIOD:
            if course_id is not None:
                raise BadRequestError("courseId is only allowed for course subscriptions")
            if period is None:
                raise BadRequestError("periodType is required for a period subscription")

        start = ensure_utc(start_date)
        end = ensure_utc(end_date)
        if end <= start:
            raise BadRequestError("End date must be after start date")
        amount = self._parse_amount(price, "price")
        discount = self._parse_amount(discount_amount, "discount amount") if discount_amount is not None else None
        currency_code = (currency or "").upper()
        if currency_code not in SUPPORTED_CURRENCIES:
            raise BadRequestError(
                f"Unsupported currency {currency!r}",
                context={"supported": list(SUPPORTED_CURRENCIES)},
            )

        if self._persistence.get_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found", context={"user_id": user_id})

        now = self._clock()
        with self._persistence.atomic():
            total_lessons = 0
            if kind is SubscriptionType.COURSE:
                course = self._persistence.get_course(course_id)
                if course is None:
                    raise NotFoundError(f"Course {course_id} not found", context={"course_id": course_id})
                if not course.is_published_and_active():
                    raise BadRequestError(
                        "Course is not available for subscription", context={"course_id": course_id}
                    )
                if self._persistence.find_open_course_subscription(user_id, course_id) is not None:
                    raise ConflictError(
                        "User already has an active or pending subscription for this course",
                        context={"user_id": user_id, "course_id": course_id},
                    )
                if course.is_full():
                    raise BadRequestError(
                        "Course has reached its student limit",
                        context={"course_id": course_id, "max_students": course.max_students},
                    )
                total_lessons = course.lessons_count

            draft = Subscription(
                id=0,
                user_id=user_id,
                subscription_type=kind,
                course_id=course_id if kind is SubscriptionType.COURSE else None,
                period_type=period,
                start_date=start,
                end_date=end,
                status=SubscriptionStatus.PENDING,
                price=amount,
                currency=currency_code,
                discount_amount=discount,
                discount_code=discount_code,
                payment_method=payment_method,
                auto_renewal=auto_renewal,
                total_lessons=total_lessons,
                email_notifications=email_notifications,
                created_at=now,
                updated_at=now,
            )
            subscription = self._persistence.insert_subscription(draft)
            if subscription.holds_seat:
                self._capacity.reserve(subscription.course_id)

        self._logger.info(
            "Subscription %s created for user %s (%s)", subscription.id, user_id, kind.value
        )
        return subscription

    def activate(
        self,
        subscription_id: int,
        transaction_id: str,
        payment_method: Optional[str] = None,
    ) -> Subscription:
        """Landing point for a confirmed payment."""
        now = self._clock()
        subscription = self._transition(
            subscription_id,
            lambda current: lifecycle.activate(
                current, transaction_id=transaction_id, payment_method=payment_method, now=now
            ),
        )
        self._notifier.activated(subscription)
        self._logger.info("Subscription %s activated (transaction %s)", subscription_id, transaction_id)
        return subscription

    def cancel(
        self,
        subscription_id: int,
        reason: str,
        actor_id: Optional[int],
        is_admin: bool,
        immediate: bool = False,
    ) -> Subscription:
        now = self._clock()

        def apply(current: Subscription) -> Subscription:
            lifecycle.ensure_owner(current, actor_id, is_admin, "cancel")
            return lifecycle.cancel(current, reason=reason, actor_id=actor_id, immediate=immediate, now=now)

        subscription = self._transition(subscription_id, apply)
        self._notifier.cancelled(subscription, reason, immediate)
        self._logger.info(
            "Subscription %s cancelled (immediate=%s). Reason: %s", subscription_id, immediate, reason
        )
        return subscription

    def renew(
        self,
        subscription_id: int,
        period_type: PeriodType,
        auto_renewal: bool = False,
        actor_id: Optional[int] = None,
        is_admin: bool = False,
    ) -> Subscription:
        period = self._parse_enum(PeriodType, period_type, "period type")
        now = self._clock()

        def apply(current: Subscription) -> Subscription:
            lifecycle.ensure_owner(current, actor_id, is_admin, "renew")
            return lifecycle.renew(current, period_type=period, auto_renewal=auto_renewal, now=now)

        subscription = self._transition(subscription_id, apply)
        self._logger.info(
            "Subscription %s renewed for %s until %s", subscription_id, period.value, subscription.end_date
        )
        return subscription

    def extend(self, subscription_id: int, months: int, reason: Optional[str] = None) -> Subscription:
        """Administrative bonus extension; status is left as is."""
        now = self._clock()
        subscription = self._transition(
            subscription_id, lambda current: lifecycle.extend(current, months=months, now=now)
        )
        self._logger.info(
            "Subscription %s extended by %s month(s): %s", subscription_id, months, reason or "no reason given"
        )
        return subscription

    def update(
        self,
        subscription_id: int,
        *,
        actor_id: Optional[int],
        is_admin: bool,
        end_date: Optional[datetime] = None,
        auto_renewal: Optional[bool] = None,
        email_notifications: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> Subscription:
        now = self._clock()

        def apply(current: Subscription) -> Subscription:
            lifecycle.ensure_owner(current, actor_id, is_admin, "update")
            return lifecycle.apply_update(
                current,
                now=now,
                end_date=ensure_utc(end_date) if end_date is not None else None,
                auto_renewal=auto_renewal,
                email_notifications=email_notifications,
                notes=notes,
            )

        subscription = self._transition(subscription_id, apply)
        self._logger.info("Subscription %s updated", subscription_id)
        return subscription

    def record_progress(
        self,
        subscription_id: int,
        completed_lessons: int,
        actor_id: Optional[int],
        is_admin: bool,
    ) -> Subscription:
        now = self._clock()

        def apply(current: Subscription) -> Subscription:
            lifecycle.ensure_owner(current, actor_id, is_admin, "update progress of")
            return lifecycle.record_progress(current, completed_lessons=completed_lessons, now=now)

        return self._transition(subscription_id, apply)

    def delete(self, subscription_id: int) -> None:
        with self._persistence.atomic():
            subscription = self._require(subscription_id)
            self._persistence.delete_subscription(subscription_id)
            if subscription.holds_seat:
                self._capacity.release(subscription.course_id)
        self._logger.info("Subscription %s deleted", subscription_id)

    # Sweep primitives ------------------------------------------------------
    def expire(self, subscription_id: int, *, now: Optional[datetime] = None) -> Subscription:
        moment = now or self._clock()
        subscription = self._transition(
            subscription_id, lambda current: lifecycle.expire(current, now=moment)
        )
        self._logger.info("Subscription %s expired", subscription_id)
        return subscription

    def mark_expiry_warned(self, subscription_id: int, *, now: Optional[datetime] = None) -> Subscription:
        moment = now or self._clock()
        return self._transition(
            subscription_id, lambda current: lifecycle.mark_expiry_warned(current, now=moment)
        )

    # Queries ---------------------------------------------------------------
    def find_by_id(self, subscription_id: int) -> Subscription:
        return self._require(subscription_id)

    def find_all(self, filters: SubscriptionFilter, page: int = 1, limit: int = 10) -> SubscriptionPage:
        page, limit = max(page, 1), max(limit, 1)
        items, total = self._persistence.list_subscriptions(filters, (page - 1) * limit, limit)
        return SubscriptionPage(
            items=items,
            total_items=total,
            total_pages=math.ceil(total / limit),
            page=page,
            limit=limit,
        )

    def find_by_user_id(
        self, user_id: int, status: Optional[SubscriptionStatus] = None
    ) -> List[Subscription]:
        items, _ = self._persistence.list_subscriptions(SubscriptionFilter(user_id=user_id, status=status))
        return items

    def find_by_course_id(
        self,
        course_id: int,
        status: Optional[SubscriptionStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SubscriptionPage:
        return self.find_all(SubscriptionFilter(course_id=course_id, status=status), page, limit)

    def check_access(self, user_id: int, course_id: int) -> AccessState:
        """
        Resolve a user's access to a course.

        A course subscription or any period subscription grants access. An
        active record wins over a cancelled one still inside its paid period.
        """
        now = self._clock()
        best = AccessState.NONE
        for subscription in self.find_by_user_id(user_id):
            if subscription.is_course and subscription.course_id != course_id:
                continue
            state = subscription.access_state(now)
            if state is AccessState.ACTIVE:
                return state
            if state is AccessState.CANCELLED_GRACE:
                best = state
        return best

    def get_statistics(self) -> SubscriptionStatistics:
        now = self._clock()
        counts = self._persistence.count_by_status()
        total = sum(counts.values())
        active = counts.get(SubscriptionStatus.ACTIVE.value, 0)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return SubscriptionStatistics(
            total=total,
            active=active,
            pending=counts.get(SubscriptionStatus.PENDING.value, 0),
            cancelled=counts.get(SubscriptionStatus.CANCELLED.value, 0),
            expired=counts.get(SubscriptionStatus.EXPIRED.value, 0),
            total_revenue=self._persistence.sum_paid_revenue(),
            monthly_revenue=self._persistence.sum_paid_revenue(paid_since=month_start),
            conversion_rate=round(active / total * 100, 2) if total else 0.0,
            by_status=counts,
        )

    # Helpers ---------------------------------------------------------------
    def _require(self, subscription_id: int) -> Subscription:
        subscription = self._persistence.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found", context={"subscription_id": subscription_id}
            )
        return subscription

    def _transition(
        self, subscription_id: int, apply: Callable[[Subscription], Subscription]
    ) -> Subscription:
        """Load, apply a pure transition, then persist it with its seat adjustment atomically."""
        with self._persistence.atomic():
            current = self._require(subscription_id)
            updated = apply(current)
            saved = self._persistence.update_subscription(updated, expected_version=current.version)
            if current.holds_seat and not saved.holds_seat:
                self._capacity.release(current.course_id)
            elif saved.holds_seat and not current.holds_seat:
                self._ensure_seat_available(saved.course_id)
                self._capacity.reserve(saved.course_id)
        return saved

    def _ensure_seat_available(self, course_id: int) -> None:
        """Raised inside the caller's transaction, so the status change rolls back with it."""
        course = self._persistence.get_course(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", context={"course_id": course_id})
        if not course.is_published_and_active():
            raise BadRequestError("Course is not available for subscription", context={"course_id": course_id})
        if course.is_full():
            raise BadRequestError(
                "Course has reached its student limit",
                context={"course_id": course_id, "max_students": course.max_students},
            )

    @staticmethod
    def _parse_enum(enum_type, value, label: str):
        try:
            return enum_type(value)
        except ValueError as exc:
            raise BadRequestError(f"Invalid {label}: {value!r}") from exc

    @staticmethod
    def _parse_amount(value, label: str) -> Decimal:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise BadRequestError(f"Invalid {label}: {value!r}") from exc
        if not amount.is_finite() or amount < 0:
            raise BadRequestError(f"{label.capitalize()} must be a non-negative amount")
        return amount
