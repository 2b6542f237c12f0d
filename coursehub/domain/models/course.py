"""Course record consumed by subscription creation and seat accounting."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class Course:
    id: int
    title: str
    is_published: bool
    is_active: bool
    max_students: int
    current_students_count: int
    lessons_count: int
    created_at: datetime
    updated_at: datetime

    def is_published_and_active(self) -> bool:
        return self.is_published and self.is_active

    def is_full(self) -> bool:
        """A non-positive max_students means the course has no seat limit."""
        return self.max_students > 0 and self.current_students_count >= self.max_students
