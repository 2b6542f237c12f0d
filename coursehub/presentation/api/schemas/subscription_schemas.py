"""Pydantic schemas for subscription API endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ....domain.models import AccessState, PeriodType, Subscription, SubscriptionStatus, SubscriptionType
from ....services.reconciliation import SweepResult
from ....services.subscription_service import SubscriptionPage, SubscriptionStatistics


class SubscriptionCreatePayload(BaseModel):
    """Request schema for creating a pending subscription."""

    user_id: Optional[int] = Field(None, description="Defaults to the calling user; admins may set any user")
    subscription_type: SubscriptionType
    course_id: Optional[int] = None
    period_type: Optional[PeriodType] = None
    start_date: datetime
    end_date: datetime
    price: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    discount_code: Optional[str] = Field(None, max_length=64)
    payment_method: Optional[str] = Field(None, max_length=64)
    auto_renewal: bool = False
    email_notifications: bool = True


class SubscriptionUpdatePayload(BaseModel):
    end_date: Optional[datetime] = None
    auto_renewal: Optional[bool] = None
    email_notifications: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=2000)


class CancelPayload(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    immediate: bool = False


class RenewPayload(BaseModel):
    period_type: PeriodType
    auto_renewal: bool = False


class ExtendPayload(BaseModel):
    months: int = Field(..., ge=1, le=120)
    reason: Optional[str] = Field(None, max_length=500)


class ActivatePayload(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=255)
    payment_method: Optional[str] = Field(None, max_length=64)


class ProgressPayload(BaseModel):
    completed_lessons: int = Field(..., ge=0)


class SubscriptionResponse(BaseModel):
    """Response schema for subscription data."""

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
    discount_amount: Optional[Decimal]
    discount_code: Optional[str]
    is_paid: bool
    payment_method: Optional[str]
    payment_transaction_id: Optional[str]
    payment_date: Optional[datetime]
    auto_renewal: bool
    next_billing_date: Optional[datetime]
    progress_percentage: float
    completed_lessons: int
    total_lessons: int
    last_accessed: Optional[datetime]
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    cancelled_by: Optional[int]
    email_notifications: bool
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    version: int

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            user_id=subscription.user_id,
            subscription_type=subscription.subscription_type,
            course_id=subscription.course_id,
            period_type=subscription.period_type,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            status=subscription.status,
            price=subscription.price,
            currency=subscription.currency,
            discount_amount=subscription.discount_amount,
            discount_code=subscription.discount_code,
            is_paid=subscription.is_paid,
            payment_method=subscription.payment_method,
            payment_transaction_id=subscription.payment_transaction_id,
            payment_date=subscription.payment_date,
            auto_renewal=subscription.auto_renewal,
            next_billing_date=subscription.next_billing_date,
            progress_percentage=subscription.progress_percentage,
            completed_lessons=subscription.completed_lessons,
            total_lessons=subscription.total_lessons,
            last_accessed=subscription.last_accessed,
            cancellation_reason=subscription.cancellation_reason,
            cancelled_at=subscription.cancelled_at,
            cancelled_by=subscription.cancelled_by,
            email_notifications=subscription.email_notifications,
            notes=subscription.notes,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
            version=subscription.version,
        )


class SubscriptionPageResponse(BaseModel):
    items: List[SubscriptionResponse]
    total_items: int
    total_pages: int
    page: int
    limit: int

    @classmethod
    def from_page(cls, page: SubscriptionPage) -> "SubscriptionPageResponse":
        return cls(
            items=[SubscriptionResponse.from_subscription(item) for item in page.items],
            total_items=page.total_items,
            total_pages=page.total_pages,
            page=page.page,
            limit=page.limit,
        )


class AccessResponse(BaseModel):
    user_id: int
    course_id: int
    access: AccessState
    has_access: bool


class StatisticsResponse(BaseModel):
    total: int
    active: int
    pending: int
    cancelled: int
    expired: int
    total_revenue: Decimal
    monthly_revenue: Decimal
    conversion_rate: float
    by_status: Dict[str, int]

    @classmethod
    def from_statistics(cls, stats: SubscriptionStatistics) -> "StatisticsResponse":
        return cls(
            total=stats.total,
            active=stats.active,
            pending=stats.pending,
            cancelled=stats.cancelled,
            expired=stats.expired,
            total_revenue=stats.total_revenue,
            monthly_revenue=stats.monthly_revenue,
            conversion_rate=stats.conversion_rate,
            by_status=dict(stats.by_status),
        )


class SweepResultResponse(BaseModel):
    expired_count: int
    expiration_notified_count: int
    notified_count: int
    completed: bool

    @classmethod
    def from_result(cls, result: SweepResult) -> "SweepResultResponse":
        return cls(
            expired_count=result.expired_count,
            expiration_notified_count=result.expiration_notified_count,
            notified_count=result.notified_count,
            completed=result.completed,
        )


class SeatResyncResponse(BaseModel):
    course_id: int
    current_students_count: int
