"""
Stripe webhook endpoint.

Signature verification happens before anything else. Verified events are
dispatched by type; duplicates and permanently unprocessable events are
acknowledged with 200 so Stripe stops resending them, while unexpected
failures return 500 so Stripe retries.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from app.core.dependencies import get_payment_processor, get_subscription_manager
from app.core.errors import InvalidSubscriptionTransition, PermanentEventError, UnverifiableWebhook
from app.core.logging_config import sanitize_log_data
from app.schemas.billing import WebhookAck
from app.services.payment_processor import PaymentEventProcessor
from app.services.subscription_lifecycle import SubscriptionLifecycleManager
from app.services.webhook_payloads import EventOutcome, StripeEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


def dispatch_event(
    event: StripeEvent,
    processor: PaymentEventProcessor,
    manager: SubscriptionLifecycleManager,
) -> EventOutcome:
    """Route a verified event to its handler. Unhandled types are ignored."""
    handlers = {
        "checkout.session.completed": processor.handle_checkout_completed,
        "checkout.session.async_payment_succeeded": processor.handle_checkout_completed,
        "checkout.session.expired": processor.handle_checkout_failed,
        "checkout.session.async_payment_failed": processor.handle_checkout_failed,
        "customer.subscription.created": manager.on_subscription_created,
        "customer.subscription.updated": manager.on_subscription_updated,
        "customer.subscription.deleted": manager.on_subscription_deleted,
        "invoice.paid": manager.on_invoice_paid,
        "invoice.payment_succeeded": manager.on_invoice_paid,
        "invoice.payment_failed": manager.on_invoice_payment_failed,
    }

    handler = handlers.get(event.type)
    if handler is None:
        logger.debug(f"Unhandled webhook event type: {event.type} (event_id={event.id})")
        return EventOutcome.IGNORED

    return handler(event)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    processor: PaymentEventProcessor = Depends(get_payment_processor),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    payload = await request.body()

    try:
        event = processor.construct_event(payload, stripe_signature)
    except UnverifiableWebhook:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook")

    logger.info(f"Webhook received: type={event.type}, id={event.id}")

    try:
        outcome = dispatch_event(event, processor, manager)
    except PermanentEventError as e:
        # Retrying can never succeed; acknowledge and leave it to manual reconciliation
        logger.error(
            f"Permanent webhook failure: {e} (event_id={event.id}, type={event.type}, "
            f"object={sanitize_log_data(event.data.object)})"
        )
        return {"received": True, "outcome": "failed_permanently"}
    except InvalidSubscriptionTransition as e:
        logger.warning(
            f"Rejected subscription transition: state={e.current_state}, event={e.event}, "
            f"stripe_subscription_id={e.stripe_subscription_id}, event_id={event.id}"
        )
        return {"received": True, "outcome": "rejected"}
    except Exception:
        logger.exception(f"Webhook processing failed: type={event.type}, id={event.id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    logger.info(f"Webhook processed: type={event.type}, id={event.id}, outcome={outcome.value}")
    return {"received": True, "outcome": outcome.value}
