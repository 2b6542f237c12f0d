"""Best-effort forwarding of lifecycle events to the notification service."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..domain.models import Subscription, User
from ..domain.ports.persistence import NotificationService, UserDirectory

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Resolves the recipient and sends; delivery failures are logged, never raised."""

    def __init__(
        self,
        users: UserDirectory,
        notifications: NotificationService,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._users = users
        self._notifications = notifications
        self._logger = log or logger

    def activated(self, subscription: Subscription) -> bool:
        return self._dispatch(
            subscription,
            "activation",
            lambda user: self._notifications.send_activation(user.email, user.name),
        )

    def cancelled(self, subscription: Subscription, reason: str, immediate: bool) -> bool:
        return self._dispatch(
            subscription,
            "cancellation",
            lambda user: self._notifications.send_cancellation(user.email, user.name, reason, immediate),
        )

    def expired(self, subscription: Subscription) -> bool:
        return self._dispatch(
            subscription,
            "expiration",
            lambda user: self._notifications.send_expiration(user.email, user.name),
        )

    def expiring_soon(self, subscription: Subscription) -> bool:
        return self._dispatch(
            subscription,
            "expiring-soon",
            lambda user: self._notifications.send_expiring_soon(user.email, user.name, subscription.end_date),
        )

    def _dispatch(self, subscription: Subscription, event: str, send: Callable[[User], Optional[bool]]) -> bool:
        if not subscription.email_notifications:
            self._logger.debug("Subscription %s opted out of %s email", subscription.id, event)
            return False
        try:
            user = self._users.get_user_by_id(subscription.user_id)
            if user is None:
                self._logger.warning(
                    "Skipping %s email for subscription %s: user %s not found",
                    event,
                    subscription.id,
                    subscription.user_id,
                )
                return False
            if send(user) is False:
                self._logger.warning("%s email for subscription %s was not delivered", event, subscription.id)
                return False
        except Exception:
            self._logger.exception("Failed to send %s email for subscription %s", event, subscription.id)
            return False
        return True
