import stripe
from fastapi import APIRouter, Header, Request
from loguru import logger

from app import settings
from app.errors import InvalidArgument, ProcessorError
from app.lifecycle import reservation_manager
from app.payments import ProcessorIntent, from_minor_units
from app.schemas import ApiResponse

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

HANDLED_EVENTS = {
    "payment_intent.amount_capturable_updated",
    "payment_intent.succeeded",
    "payment_intent.canceled",
    "payment_intent.payment_failed",
}


@router.post("/stripe", response_model=ApiResponse[None])
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> ApiResponse[None]:
    """Apply PaymentIntent updates pushed by Stripe to the matching reservation."""
    if not settings.stripe_webhook_secret:
        raise ProcessorError("Webhook secret not configured")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(
            payload, stripe_signature or "", settings.stripe_webhook_secret
        )
    except (ValueError, stripe.SignatureVerificationError):
        raise InvalidArgument("Invalid webhook signature") from None

    event_type = event["type"]
    if event_type not in HANDLED_EVENTS:
        logger.debug("Ignoring Stripe event {}", event_type)
        return ApiResponse(message="ignored")

    obj = event["data"]["object"]
    intent = ProcessorIntent(
        id=obj["id"],
        client_secret=obj.get("client_secret"),
        status=obj["status"],
        amount=from_minor_units(obj.get("amount")),
        metadata=dict(obj.get("metadata") or {}),
    )
    logger.info("Stripe event {} for intent {} ({})", event_type, intent.id, intent.status)
    await reservation_manager.apply_processor_event(intent)
    return ApiResponse(message="received")
