"""API router for subscription lifecycle management."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ....core.dependencies import get_capacity_coordinator, get_subscription_service, get_sweep_scheduler
from ....domain.errors import ForbiddenError
from ....domain.models import AccessState, PeriodType, Subscription, SubscriptionStatus, SubscriptionType
from ....domain.ports.persistence import SubscriptionFilter
from ....services.capacity import CapacityCoordinator
from ....services.reconciliation import SweepScheduler
from ....services.subscription_service import SubscriptionService
from ..dependencies import Actor, get_actor, require_admin
from ..schemas.subscription_schemas import (
    AccessResponse,
    ActivatePayload,
    CancelPayload,
    ExtendPayload,
    ProgressPayload,
    RenewPayload,
    SeatResyncResponse,
    StatisticsResponse,
    SubscriptionCreatePayload,
    SubscriptionPageResponse,
    SubscriptionResponse,
    SubscriptionUpdatePayload,
    SweepResultResponse,
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _ensure_visible(actor: Actor, user_id: int) -> None:
    if not actor.is_admin and actor.user_id != user_id:
        raise ForbiddenError("You can only view your own subscriptions", context={"user_id": user_id})


def _view(actor: Actor, subscription: Subscription) -> SubscriptionResponse:
    _ensure_visible(actor, subscription.user_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    payload: SubscriptionCreatePayload,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """Create a pending subscription; course subscriptions claim a seat."""
    user_id = payload.user_id if payload.user_id is not None else actor.user_id
    if not actor.is_admin and user_id != actor.user_id:
        raise ForbiddenError("You can only subscribe yourself", context={"user_id": user_id})
    subscription = service.create(
        user_id,
        payload.subscription_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        price=payload.price,
        currency=payload.currency,
        course_id=payload.course_id,
        period_type=payload.period_type,
        discount_amount=payload.discount_amount,
        discount_code=payload.discount_code,
        payment_method=payload.payment_method,
        auto_renewal=payload.auto_renewal,
        email_notifications=payload.email_notifications,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.get("", response_model=SubscriptionPageResponse)
async def list_subscriptions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: Optional[int] = None,
    course_id: Optional[int] = None,
    status_filter: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    subscription_type: Optional[SubscriptionType] = None,
    period_type: Optional[PeriodType] = None,
    is_paid: Optional[bool] = None,
    auto_renewal: Optional[bool] = None,
    currency: Optional[str] = None,
    start_date_from: Optional[datetime] = None,
    start_date_to: Optional[datetime] = None,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionPageResponse:
    """Filtered, paginated listing. Non-admin callers only see their own records."""
    if not actor.is_admin:
        user_id = actor.user_id
    filters = SubscriptionFilter(
        user_id=user_id,
        course_id=course_id,
        status=status_filter,
        subscription_type=subscription_type,
        period_type=period_type,
        is_paid=is_paid,
        auto_renewal=auto_renewal,
        currency=currency.upper() if currency else None,
        start_date_from=start_date_from,
        start_date_to=start_date_to,
    )
    return SubscriptionPageResponse.from_page(service.find_all(filters, page=page, limit=limit))


@router.get("/access", response_model=AccessResponse)
async def check_access(
    course_id: int,
    user_id: Optional[int] = None,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> AccessResponse:
    target = user_id if user_id is not None else actor.user_id
    _ensure_visible(actor, target)
    access = service.check_access(target, course_id)
    return AccessResponse(
        user_id=target,
        course_id=course_id,
        access=access,
        has_access=access is not AccessState.NONE,
    )


@router.get("/statistics/overview", response_model=StatisticsResponse)
async def get_statistics(
    _: Actor = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> StatisticsResponse:
    return StatisticsResponse.from_statistics(service.get_statistics())


@router.post("/expire-check", response_model=SweepResultResponse)
async def run_expire_check(
    _: Actor = Depends(require_admin),
    scheduler: SweepScheduler = Depends(get_sweep_scheduler),
) -> SweepResultResponse:
    """Run the reconciliation sweep now, outside the regular schedule."""
    result = await scheduler.run_once()
    return SweepResultResponse.from_result(result)


@router.post("/courses/{course_id}/resync", response_model=SeatResyncResponse)
async def resync_course_seats(
    course_id: int,
    _: Actor = Depends(require_admin),
    capacity: CapacityCoordinator = Depends(get_capacity_coordinator),
) -> SeatResyncResponse:
    count = capacity.resync(course_id)
    return SeatResyncResponse(course_id=course_id, current_students_count=count)


@router.get("/user/{user_id}", response_model=List[SubscriptionResponse])
async def list_user_subscriptions(
    user_id: int,
    status_filter: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> List[SubscriptionResponse]:
    _ensure_visible(actor, user_id)
    return [
        SubscriptionResponse.from_subscription(item)
        for item in service.find_by_user_id(user_id, status_filter)
    ]


@router.get("/course/{course_id}", response_model=SubscriptionPageResponse)
async def list_course_subscriptions(
    course_id: int,
    status_filter: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: Actor = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionPageResponse:
    return SubscriptionPageResponse.from_page(
        service.find_by_course_id(course_id, status_filter, page=page, limit=limit)
    )


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    return _view(actor, service.find_by_id(subscription_id))


@router.put("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = service.update(
        subscription_id,
        actor_id=actor.user_id,
        is_admin=actor.is_admin,
        end_date=payload.end_date,
        auto_renewal=payload.auto_renewal,
        email_notifications=payload.email_notifications,
        notes=payload.notes,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: int,
    _: Actor = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Response:
    service.delete(subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: int,
    payload: CancelPayload,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = service.cancel(
        subscription_id,
        payload.reason,
        actor_id=actor.user_id,
        is_admin=actor.is_admin,
        immediate=payload.immediate,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: int,
    payload: RenewPayload,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = service.renew(
        subscription_id,
        payload.period_type,
        auto_renewal=payload.auto_renewal,
        actor_id=actor.user_id,
        is_admin=actor.is_admin,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/{subscription_id}/extend", response_model=SubscriptionResponse)
async def extend_subscription(
    subscription_id: int,
    payload: ExtendPayload,
    _: Actor = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = service.extend(subscription_id, payload.months, payload.reason)
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/{subscription_id}/activate", response_model=SubscriptionResponse)
async def activate_subscription(
    subscription_id: int,
    payload: ActivatePayload,
    _: Actor = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """Manual payment confirmation; the Stripe webhook is the automated path."""
    subscription = service.activate(subscription_id, payload.transaction_id, payload.payment_method)
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/{subscription_id}/progress", response_model=SubscriptionResponse)
async def record_progress(
    subscription_id: int,
    payload: ProgressPayload,
    actor: Actor = Depends(get_actor),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = service.record_progress(
        subscription_id,
        payload.completed_lessons,
        actor_id=actor.user_id,
        is_admin=actor.is_admin,
    )
    return SubscriptionResponse.from_subscription(subscription)
