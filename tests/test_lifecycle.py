from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from coursehub.domain import lifecycle
from coursehub.domain.errors import BadRequestError, ConflictError, ForbiddenError
from coursehub.domain.models import (
    AccessState,
    PeriodType,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_subscription(**overrides) -> Subscription:
    values = dict(
        id=1,
        user_id=7,
        subscription_type=SubscriptionType.COURSE,
        course_id=3,
        period_type=None,
        start_date=NOW - timedelta(days=10),
        end_date=NOW + timedelta(days=20),
        status=SubscriptionStatus.ACTIVE,
        price=Decimal("100"),
        currency="USD",
        created_at=NOW - timedelta(days=10),
        updated_at=NOW - timedelta(days=10),
        total_lessons=10,
    )
    values.update(overrides)
    return Subscription(**values)


def test_soft_cancel_keeps_end_date_and_grace_access():
    subscription = make_subscription(auto_renewal=True, next_billing_date=NOW + timedelta(days=13))

    cancelled = lifecycle.cancel(subscription, reason="too busy", actor_id=7, immediate=False, now=NOW)

    assert cancelled.status is SubscriptionStatus.CANCELLED
    assert cancelled.end_date == subscription.end_date
    assert cancelled.cancelled_at == NOW
    assert cancelled.cancelled_by == 7
    assert cancelled.cancellation_reason == "too busy"
    assert cancelled.auto_renewal is False
    assert cancelled.next_billing_date is None
    assert cancelled.access_state(NOW) is AccessState.CANCELLED_GRACE


def test_immediate_cancel_ends_access_now():
    cancelled = lifecycle.cancel(make_subscription(), reason="refund", actor_id=1, immediate=True, now=NOW)

    assert cancelled.end_date == NOW
    assert cancelled.access_state(NOW) is AccessState.NONE


def test_immediate_cancel_of_overdue_record_keeps_its_end_date():
    overdue = make_subscription(end_date=NOW - timedelta(days=1))

    cancelled = lifecycle.cancel(overdue, reason="refund", actor_id=1, immediate=True, now=NOW)

    assert cancelled.end_date == overdue.end_date
    assert cancelled.access_state(NOW) is AccessState.NONE


def test_soft_cancel_of_pending_record_grants_no_grace():
    pending = make_subscription(status=SubscriptionStatus.PENDING)

    cancelled = lifecycle.cancel(pending, reason="never paid", actor_id=7, immediate=False, now=NOW)

    assert cancelled.grace_access is False
    assert cancelled.access_state(NOW) is AccessState.NONE


def test_access_starts_at_start_date():
    later = make_subscription(start_date=NOW + timedelta(days=2), end_date=NOW + timedelta(days=32))

    assert later.access_state(NOW) is AccessState.NONE
    assert later.access_state(NOW + timedelta(days=2)) is AccessState.ACTIVE


def test_immediate_cancel_before_start_keeps_end_after_start():
    future = make_subscription(start_date=NOW + timedelta(days=5), end_date=NOW + timedelta(days=35))

    cancelled = lifecycle.cancel(future, reason="changed mind", actor_id=7, immediate=True, now=NOW)

    assert cancelled.end_date > cancelled.start_date


def test_cancel_twice_is_a_conflict_and_leaves_record_untouched():
    cancelled = lifecycle.cancel(make_subscription(), reason="first", actor_id=7, immediate=False, now=NOW)
    snapshot = replace(cancelled)

    with pytest.raises(ConflictError):
        lifecycle.cancel(cancelled, reason="second", actor_id=7, immediate=True, now=NOW)

    assert cancelled == snapshot


def test_renew_adds_months_to_stored_end_date_even_in_the_past():
    lapsed = make_subscription(
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_date=datetime(2024, 1, 31, tzinfo=timezone.utc),
        status=SubscriptionStatus.EXPIRED,
    )

    renewed = lifecycle.renew(lapsed, period_type=PeriodType.THREE_MONTHS, auto_renewal=False, now=NOW)

    assert renewed.end_date == datetime(2024, 4, 30, tzinfo=timezone.utc)
    assert renewed.status is SubscriptionStatus.ACTIVE
    assert renewed.next_billing_date is None


def test_renew_with_auto_renewal_schedules_billing_a_week_before_end():
    renewed = lifecycle.renew(make_subscription(), period_type=PeriodType.ONE_MONTH, auto_renewal=True, now=NOW)

    assert renewed.next_billing_date == renewed.end_date - timedelta(days=7)


def test_renew_cancelled_is_a_conflict():
    cancelled = make_subscription(status=SubscriptionStatus.CANCELLED)
    with pytest.raises(ConflictError):
        lifecycle.renew(cancelled, period_type=PeriodType.ONE_MONTH, auto_renewal=False, now=NOW)


def test_activate_records_payment():
    pending = make_subscription(status=SubscriptionStatus.PENDING)

    active = lifecycle.activate(pending, transaction_id="tx-1", payment_method="card", now=NOW)

    assert active.status is SubscriptionStatus.ACTIVE
    assert active.is_paid is True
    assert active.payment_transaction_id == "tx-1"
    assert active.payment_date == NOW
    assert active.payment_method == "card"


def test_activate_rejects_terminal_states_and_blank_transaction():
    with pytest.raises(ConflictError):
        lifecycle.activate(
            make_subscription(status=SubscriptionStatus.CANCELLED), transaction_id="tx", payment_method=None, now=NOW
        )
    with pytest.raises(BadRequestError):
        lifecycle.activate(make_subscription(), transaction_id="", payment_method=None, now=NOW)


def test_extend_requires_at_least_one_month():
    with pytest.raises(BadRequestError):
        lifecycle.extend(make_subscription(), months=0, now=NOW)

    extended = lifecycle.extend(make_subscription(), months=2, now=NOW)
    assert extended.end_date == datetime(2024, 6, 4, 12, 0, tzinfo=timezone.utc)
    assert extended.status is SubscriptionStatus.ACTIVE


def test_expire_only_applies_to_overdue_active_records():
    overdue = make_subscription(end_date=NOW - timedelta(days=1))

    assert lifecycle.expire(overdue, now=NOW).status is SubscriptionStatus.EXPIRED
    with pytest.raises(ConflictError):
        lifecycle.expire(make_subscription(), now=NOW)
    with pytest.raises(ConflictError):
        lifecycle.expire(replace(overdue, status=SubscriptionStatus.CANCELLED), now=NOW)


def test_expiry_warning_window_and_deduplication():
    ending = make_subscription(end_date=NOW + timedelta(days=3))

    assert lifecycle.needs_expiry_warning(ending, NOW) is True
    assert lifecycle.needs_expiry_warning(replace(ending, email_notifications=False), NOW) is False
    assert lifecycle.needs_expiry_warning(make_subscription(end_date=NOW + timedelta(days=10)), NOW) is False

    warned = lifecycle.mark_expiry_warned(ending, now=NOW)
    assert lifecycle.needs_expiry_warning(warned, NOW + timedelta(days=1)) is False

    extended = replace(warned, end_date=warned.end_date + timedelta(days=30))
    assert lifecycle.needs_expiry_warning(extended, NOW + timedelta(days=28)) is True


def test_record_progress_clamps_to_total_lessons():
    progressed = lifecycle.record_progress(make_subscription(), completed_lessons=12, now=NOW)

    assert progressed.completed_lessons == 10
    assert progressed.progress_percentage == 100.0
    assert progressed.last_accessed == NOW

    halfway = lifecycle.record_progress(make_subscription(), completed_lessons=5, now=NOW)
    assert halfway.progress_percentage == 50.0


def test_apply_update_on_cancelled_only_accepts_notes_and_preferences():
    cancelled = make_subscription(status=SubscriptionStatus.CANCELLED)

    with pytest.raises(ConflictError):
        lifecycle.apply_update(cancelled, now=NOW, end_date=NOW + timedelta(days=60))

    updated = lifecycle.apply_update(cancelled, now=NOW, notes="refund issued", email_notifications=False)
    assert updated.notes == "refund issued"
    assert updated.email_notifications is False


def test_apply_update_recomputes_next_billing_date():
    new_end = NOW + timedelta(days=90)

    updated = lifecycle.apply_update(make_subscription(), now=NOW, end_date=new_end, auto_renewal=True)

    assert updated.end_date == new_end
    assert updated.next_billing_date == new_end - timedelta(days=7)

    with pytest.raises(BadRequestError):
        lifecycle.apply_update(make_subscription(), now=NOW, end_date=NOW - timedelta(days=30))


def test_ensure_owner():
    subscription = make_subscription(user_id=7)

    lifecycle.ensure_owner(subscription, 7, False, "cancel")
    lifecycle.ensure_owner(subscription, 99, True, "cancel")
    with pytest.raises(ForbiddenError):
        lifecycle.ensure_owner(subscription, 99, False, "cancel")
