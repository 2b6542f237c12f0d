"""
Subscription core exceptions.

Every failure carries an HTTP-friendly status code and a machine-readable
error code so the API layer can translate it without inspecting messages.
"""

from typing import Any, Dict, Optional


class SubscriptionError(Exception):
    """
    Base error for the subscription core.

    Attributes:
        message: Human-readable reason
        error_code: Machine-readable code for API responses
        status_code: HTTP status code for this error kind
        context: Identifiers involved in the failure
    """

    def __init__(
        self,
        message: str,
        error_code: str = "SUBSCRIPTION_ERROR",
        status_code: int = 400,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
        }


class NotFoundError(SubscriptionError):
    """Referenced user, course or subscription does not exist."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "NOT_FOUND", status_code=404, context=context)


class BadRequestError(SubscriptionError):
    """Invalid input for the requested operation."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "BAD_REQUEST", status_code=400, context=context)


class ConflictError(SubscriptionError):
    """Operation clashes with the current state of the subscription."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "CONFLICT", status_code=409, context=context)


class ForbiddenError(SubscriptionError):
    """Actor may not mutate a subscription it does not own."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "FORBIDDEN", status_code=403, context=context)


class ConcurrentModificationError(ConflictError):
    """The record changed between read and write."""

    def __init__(self, subscription_id: int, expected_version: int) -> None:
        super().__init__(
            f"Subscription {subscription_id} was modified concurrently",
            context={"subscription_id": subscription_id, "expected_version": expected_version},
        )
        self.error_code = "CONCURRENT_MODIFICATION"
