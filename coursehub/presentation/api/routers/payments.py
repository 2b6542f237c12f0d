"""Payment provider callbacks."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from ....core.dependencies import get_payment_webhook
from ....services.payment_webhook import PaymentWebhookHandler

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    handler: PaymentWebhookHandler = Depends(get_payment_webhook),
) -> Dict[str, Any]:
    """Stripe delivery endpoint; verified payments activate the referenced subscription."""
    payload = await request.body()
    return handler.handle(payload, stripe_signature or "")
