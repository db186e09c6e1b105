"""
Stripe gateway for checkout sessions, refunds, subscription changes and
webhook signature verification.

All direct calls to the Stripe SDK go through StripeGateway so services can
be exercised against a fake in tests.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from app.core.config import (
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE,
    FRONTEND_URL,
)
from app.core.errors import StripeGatewayError, UnverifiableWebhook

logger = logging.getLogger(__name__)

# Initialize Stripe client
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class Refund:
    id: str
    amount: int
    status: str


class StripeGateway:
    """Thin wrapper over the Stripe SDK."""

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        tolerance: int = STRIPE_WEBHOOK_TOLERANCE,
    ):
        self.webhook_secret = webhook_secret if webhook_secret is not None else STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event body.

        Args:
            payload: Raw request body bytes, exactly as received
            signature: Stripe-Signature header value

        Returns:
            Parsed event as a plain dictionary

        Raises:
            UnverifiableWebhook: Missing secret, missing or invalid signature,
                stale timestamp, or a body that is not JSON
        """
        if not self.webhook_secret:
            logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise UnverifiableWebhook()
        if not signature:
            logger.warning("Webhook rejected: missing Stripe-Signature header")
            raise UnverifiableWebhook()

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook rejected: signature verification failed")
            raise UnverifiableWebhook() from e
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("Webhook rejected: payload is not valid JSON")
            raise UnverifiableWebhook() from e

        if not isinstance(event, dict):
            logger.warning("Invalid webhook payload: not a JSON object")
            raise UnverifiableWebhook()
        return event

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_credit_checkout_session(
        self,
        organization_id: int,
        credit_package_id: int,
        payment_attempt_id: int,
        package_name: str,
        credit_amount: int,
        price: int,
        currency: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a one-time payment Checkout session for a credit package.

        The metadata written here is what the checkout.session.completed
        handler needs to grant the credits.
        """
        if not success_url:
            success_url = f"{FRONTEND_URL}/billing/credits?purchase=success&session_id={{CHECKOUT_SESSION_ID}}"
        if not cancel_url:
            cancel_url = f"{FRONTEND_URL}/billing/credits?purchase=cancelled"

        metadata = {
            "organizationId": str(organization_id),
            "creditPackageId": str(credit_package_id),
            "paymentAttemptId": str(payment_attempt_id),
            "creditAmount": str(credit_amount),
        }

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": price,
                        "product_data": {
                            "name": package_name,
                            "description": f"{credit_amount} credits",
                        },
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email,
                client_reference_id=str(payment_attempt_id),
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating credit checkout session: {e}")
            raise StripeGatewayError(f"Failed to create checkout session: {e}") from e

        logger.info(
            f"Created credit checkout session: org_id={organization_id}, "
            f"package_id={credit_package_id}, session_id={session.id}"
        )
        return CheckoutSession(id=session.id, url=session.url)

    def create_subscription_checkout_session(
        self,
        organization_id: int,
        plan_id: int,
        plan_name: str,
        billing_cycle: str,
        price: int,
        currency: str,
        trial_days: Optional[int] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a subscription-mode Checkout session for a plan."""
        if not success_url:
            success_url = f"{FRONTEND_URL}/billing/subscription?checkout=success&session_id={{CHECKOUT_SESSION_ID}}"
        if not cancel_url:
            cancel_url = f"{FRONTEND_URL}/billing/subscription?checkout=cancelled"

        metadata = {
            "organizationId": str(organization_id),
            "planId": str(plan_id),
            "billingCycle": billing_cycle,
        }
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": price,
                        "recurring": {"interval": "year" if billing_cycle == "yearly" else "month"},
                        "product_data": {"name": plan_name},
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email,
                client_reference_id=str(organization_id),
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data=subscription_data,
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating subscription checkout session: {e}")
            raise StripeGatewayError(f"Failed to create checkout session: {e}") from e

        logger.info(
            f"Created subscription checkout session: org_id={organization_id}, plan_id={plan_id}, "
            f"cycle={billing_cycle}, session_id={session.id}"
        )
        return CheckoutSession(id=session.id, url=session.url)

    # ------------------------------------------------------------------
    # Refunds and subscription changes
    # ------------------------------------------------------------------

    def create_refund(self, payment_intent_id: str, amount: int, reason: Optional[str] = None) -> Refund:
        """Refund (part of) a payment intent. `amount` is in minor units."""
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason or ""},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating refund for payment_intent={payment_intent_id}: {e}")
            raise StripeGatewayError(f"Failed to create refund: {e}") from e

        logger.info(f"Created refund: refund_id={refund.id}, payment_intent={payment_intent_id}, amount={amount}")
        return Refund(id=refund.id, amount=refund.amount, status=refund.status)

    def set_cancel_at_period_end(self, stripe_subscription_id: str, cancel: bool = True) -> None:
        try:
            stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            logger.error(f"Stripe error updating subscription {stripe_subscription_id}: {e}")
            raise StripeGatewayError(f"Failed to update subscription: {e}") from e

        logger.info(f"Set cancel_at_period_end={cancel} for subscription {stripe_subscription_id}")

    def cancel_subscription(self, stripe_subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        try:
            stripe.Subscription.cancel(stripe_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error canceling subscription {stripe_subscription_id}: {e}")
            raise StripeGatewayError(f"Failed to cancel subscription: {e}") from e

        logger.info(f"Canceled subscription {stripe_subscription_id}")
