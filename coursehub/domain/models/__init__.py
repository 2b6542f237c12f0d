"""Domain models for the CourseHub subscription core."""

from .course import Course
from .subscription import (
    AccessState,
    PeriodType,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from .user import User

__all__ = [
    "AccessState",
    "Course",
    "PeriodType",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionType",
    "User",
]
