"""Stripe webhook landing point: verified payment events activate subscriptions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from ..domain.errors import BadRequestError, ConcurrentModificationError, SubscriptionError
from ..domain.models import Subscription
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

_PAYMENT_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")


class PaymentWebhookHandler:
    """Verifies Stripe signatures and forwards successful payments to ``activate``."""

    def __init__(
        self,
        subscription_service: SubscriptionService,
        webhook_secret: Optional[str],
        *,
        api_key: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._subscriptions = subscription_service
        self._webhook_secret = webhook_secret
        if api_key:
            stripe.api_key = api_key
        self._logger = log or logger

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_secret)

    def handle(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Value of the ``Stripe-Signature`` header

        Returns:
            Status dictionary echoed back to Stripe

        Raises:
            BadRequestError: Payload or signature could not be verified
            ConcurrentModificationError: The record kept changing; Stripe should redeliver
        """
        if not self.enabled:
            self._logger.warning("Stripe webhook secret not configured; event ignored.")
            return {"status": "ignored"}

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise BadRequestError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise BadRequestError("Invalid webhook payload") from exc

        event_type = event["type"]
        if event_type not in _PAYMENT_EVENTS:
            self._logger.debug("Ignoring Stripe event %s", event_type)
            return {"status": "ignored", "type": event_type}

        data = event["data"]["object"]
        metadata = data.get("metadata") or {}
        raw_id = metadata.get("subscription_id")
        if not raw_id or not str(raw_id).isdigit():
            self._logger.warning("Stripe event %s has no usable subscription_id metadata", event["id"])
            return {"status": "ignored", "type": event_type}

        if event_type == "checkout.session.completed":
            transaction_id = data.get("payment_intent") or data["id"]
        else:
            transaction_id = data["id"]

        try:
            subscription = self._activate(int(raw_id), transaction_id)
        except ConcurrentModificationError:
            # Non-2xx makes Stripe redeliver the event later.
            self._logger.warning(
                "Stripe event %s lost a race on subscription %s; asking for redelivery", event["id"], raw_id
            )
            raise
        except SubscriptionError as exc:
            # Acknowledge so Stripe stops retrying a delivery that can never succeed.
            self._logger.error("Stripe event %s could not activate subscription %s: %s", event["id"], raw_id, exc)
            return {"status": "error", "message": exc.message}

        return {"status": "success", "subscription_id": subscription.id}

    def _activate(self, subscription_id: int, transaction_id: str) -> Subscription:
        """Activate, retrying once when the record changed between read and write."""
        try:
            return self._subscriptions.activate(subscription_id, transaction_id, payment_method="stripe")
        except ConcurrentModificationError:
            self._logger.info("Retrying activation of subscription %s after a concurrent update", subscription_id)
        return self._subscriptions.activate(subscription_id, transaction_id, payment_method="stripe")
