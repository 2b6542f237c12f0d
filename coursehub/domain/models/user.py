"""User record as seen by the subscription core."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class User:
    """
    User entity owned by the accounts service.

    Attributes:
        id: Unique identifier
        email: Address used for lifecycle notifications
        name: Display name used in notification greetings
        created_at: Account creation timestamp
    """

    id: int
    email: str
    name: str
    created_at: datetime

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email}>"
