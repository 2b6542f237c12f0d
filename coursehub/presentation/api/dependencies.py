from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ...domain.errors import ForbiddenError

ADMIN_ROLE = "admin"


@dataclass(slots=True)
class Actor:
    """Caller identity forwarded by the authenticating gateway."""

    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header.") from exc
    return Actor(user_id=user_id, role=(x_user_role or "user").lower())


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise ForbiddenError("Administrator role required", context={"user_id": actor.user_id})
    return actor
