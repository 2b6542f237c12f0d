"""
Pure subscription state transitions.

Each function takes the current record plus a command and returns the next
record, or raises a SubscriptionError and leaves the input untouched. The
service layer is responsible for persisting the result and for side effects
such as seat accounting and notifications.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from .billing_clock import GRACE_WINDOW, add_months, months_for, next_billing_date
from .errors import BadRequestError, ConflictError, ForbiddenError
from .models import PeriodType, Subscription, SubscriptionStatus

_ACTIVATABLE = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)


def ensure_owner(subscription: Subscription, actor_id: Optional[int], is_admin: bool, action: str) -> None:
    if is_admin:
        return
    if actor_id is None or subscription.user_id != actor_id:
        raise ForbiddenError(
            f"Not allowed to {action} subscription {subscription.id}",
            context={"subscription_id": subscription.id, "actor_id": actor_id},
        )


def _ensure_not_cancelled(subscription: Subscription, message: str) -> None:
    if subscription.status is SubscriptionStatus.CANCELLED:
        raise ConflictError(message, context={"subscription_id": subscription.id})


def activate(
    subscription: Subscription,
    *,
    transaction_id: str,
    payment_method: Optional[str],
    now: datetime,
) -> Subscription:
    """Confirm payment. Re-activating an active record overwrites the payment fields."""
    if not transaction_id:
        raise BadRequestError("Payment transaction id is required")
    if subscription.status not in _ACTIVATABLE:
        raise ConflictError(
            f"Cannot activate a subscription in status {subscription.status.value}",
            context={"subscription_id": subscription.id, "status": subscription.status.value},
        )
    return replace(
        subscription,
        status=SubscriptionStatus.ACTIVE,
        is_paid=True,
        payment_transaction_id=transaction_id,
        payment_date=now,
        payment_method=payment_method or subscription.payment_method,
        updated_at=now,
    )


def cancel(
    subscription: Subscription,
    *,
    reason: str,
    actor_id: Optional[int],
    immediate: bool,
    now: datetime,
) -> Subscription:
    """
    Cancel the record. Only a soft cancel of an active record keeps access until
    end_date; an immediate cancel or a cancelled pending record ends access now.
    """
    _ensure_not_cancelled(subscription, "Subscription is already cancelled")
    end_date = subscription.end_date
    if immediate:
        # Hard stop; never later than the scheduled end, never before start_date.
        end_date = min(end_date, max(now, subscription.start_date + timedelta(seconds=1)))
    return replace(
        subscription,
        status=SubscriptionStatus.CANCELLED,
        grace_access=subscription.status is SubscriptionStatus.ACTIVE and not immediate,
        cancellation_reason=reason,
        cancelled_at=now,
        cancelled_by=actor_id,
        auto_renewal=False,
        next_billing_date=None,
        end_date=end_date,
        updated_at=now,
    )


def renew(
    subscription: Subscription,
    *,
    period_type: PeriodType,
    auto_renewal: bool,
    now: datetime,
) -> Subscription:
    """Extend from the stored end date, even when that date is already in the past."""
    _ensure_not_cancelled(subscription, "Cannot renew a cancelled subscription")
    new_end = add_months(subscription.end_date, months_for(period_type))
    return replace(
        subscription,
        end_date=new_end,
        status=SubscriptionStatus.ACTIVE,
        auto_renewal=auto_renewal,
        next_billing_date=next_billing_date(new_end) if auto_renewal else None,
        updated_at=now,
    )


def extend(subscription: Subscription, *, months: int, now: datetime) -> Subscription:
    if months < 1:
        raise BadRequestError("Extension must be at least one month", context={"months": months})
    _ensure_not_cancelled(subscription, "Cannot extend a cancelled subscription")
    new_end = add_months(subscription.end_date, months)
    return replace(
        subscription,
        end_date=new_end,
        next_billing_date=next_billing_date(new_end) if subscription.auto_renewal else None,
        updated_at=now,
    )


def expire(subscription: Subscription, *, now: datetime) -> Subscription:
    if subscription.status is not SubscriptionStatus.ACTIVE or subscription.end_date >= now:
        raise ConflictError(
            f"Subscription {subscription.id} is not overdue",
            context={"subscription_id": subscription.id, "status": subscription.status.value},
        )
    return replace(subscription, status=SubscriptionStatus.EXPIRED, updated_at=now)


def needs_expiry_warning(subscription: Subscription, now: datetime) -> bool:
    """True when the record sits in its grace window and has not been warned for it yet."""
    if subscription.status is not SubscriptionStatus.ACTIVE or not subscription.email_notifications:
        return False
    if not now <= subscription.end_date <= now + GRACE_WINDOW:
        return False
    warned = subscription.expiry_warning_sent_at
    return warned is None or warned < subscription.end_date - GRACE_WINDOW


def mark_expiry_warned(subscription: Subscription, *, now: datetime) -> Subscription:
    return replace(subscription, expiry_warning_sent_at=now, updated_at=now)


def record_progress(subscription: Subscription, *, completed_lessons: int, now: datetime) -> Subscription:
    if completed_lessons < 0:
        raise BadRequestError("Completed lessons cannot be negative")
    total = subscription.total_lessons
    completed = min(completed_lessons, total) if total > 0 else completed_lessons
    percentage = round(completed / total * 100, 2) if total > 0 else 0.0
    return replace(
        subscription,
        completed_lessons=completed,
        progress_percentage=percentage,
        last_accessed=now,
        updated_at=now,
    )


def apply_update(
    subscription: Subscription,
    *,
    now: datetime,
    end_date: Optional[datetime] = None,
    auto_renewal: Optional[bool] = None,
    email_notifications: Optional[bool] = None,
    notes: Optional[str] = None,
) -> Subscription:
    if subscription.status is SubscriptionStatus.CANCELLED and (end_date is not None or auto_renewal is not None):
        raise ConflictError(
            "Cancelled subscriptions only accept notes and notification preferences",
            context={"subscription_id": subscription.id},
        )
    changes = {"updated_at": now}
    if end_date is not None:
        if end_date <= subscription.start_date:
            raise BadRequestError("End date must be after start date")
        changes["end_date"] = end_date
    if auto_renewal is not None:
        changes["auto_renewal"] = auto_renewal
    if email_notifications is not None:
        changes["email_notifications"] = email_notifications
    if notes is not None:
        changes["notes"] = notes

    effective_end = changes.get("end_date", subscription.end_date)
    effective_auto = changes.get("auto_renewal", subscription.auto_renewal)
    changes["next_billing_date"] = next_billing_date(effective_end) if effective_auto else None
    return replace(subscription, **changes)
