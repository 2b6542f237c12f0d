"""Occupied-seat accounting for course subscriptions."""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.errors import NotFoundError
from ..domain.ports.persistence import CourseCatalog, SubscriptionRepository

logger = logging.getLogger(__name__)


class CapacityCoordinator:
    """
    Sole writer of a course's ``current_students_count``.

    Callers run ``reserve``/``release`` inside the same ``atomic()`` block as the
    status change that claims or frees the seat.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        courses: CourseCatalog,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._courses = courses
        self._logger = log or logger

    def reserve(self, course_id: int) -> int:
        count = self._courses.adjust_seat_count(course_id, 1)
        self._logger.debug("Reserved seat on course %s (now %s)", course_id, count)
        return count

    def release(self, course_id: int) -> int:
        """Free one seat. Releasing on an empty counter is a no-op."""
        course = self._courses.get_course(course_id)
        if course is None:
            self._logger.warning("Cannot release seat: course %s no longer exists", course_id)
            return 0
        if course.current_students_count <= 0:
            self._logger.warning("Seat counter for course %s already at zero; release skipped", course_id)
            return 0
        count = self._courses.adjust_seat_count(course_id, -1)
        self._logger.debug("Released seat on course %s (now %s)", course_id, count)
        return count

    def resync(self, course_id: int) -> int:
        """Rebuild the counter from the pending/active course subscriptions."""
        with self._subscriptions.atomic():
            course = self._courses.get_course(course_id)
            if course is None:
                raise NotFoundError(f"Course {course_id} not found", context={"course_id": course_id})
            actual = self._subscriptions.count_seat_holders(course_id)
            if actual != course.current_students_count:
                self._logger.warning(
                    "Seat counter drift on course %s: stored=%s actual=%s",
                    course_id,
                    course.current_students_count,
                    actual,
                )
                self._courses.set_seat_count(course_id, actual)
        return actual
