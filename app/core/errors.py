"""
Error taxonomy for the credit ledger and billing lifecycle.

Expected business outcomes (insufficient credits, duplicate webhook delivery)
are NOT exceptions; they are returned as typed results by the services.
Everything here is either a permanent processing failure, a security
rejection, or an infrastructure failure.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing and ledger errors."""


class ConfigurationError(BillingError):
    """Required configuration is missing or invalid at startup."""


class UnverifiableWebhook(BillingError):
    """Webhook signature could not be verified. Never carries the reason."""

    def __init__(self):
        super().__init__("Webhook signature verification failed")


class PermanentEventError(BillingError):
    """
    A verified webhook that can never be processed successfully.

    The webhook is acknowledged so the processor stops resending it; the
    event context is logged for manual reconciliation.
    """

    def __init__(self, message: str, event_id: Optional[str] = None, event_type: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id
        self.event_type = event_type


class MissingMetadata(PermanentEventError):
    """Required metadata fields are absent from a webhook payload."""

    def __init__(self, missing_fields, event_id: Optional[str] = None, event_type: Optional[str] = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Missing required metadata: {', '.join(self.missing_fields)}",
            event_id=event_id,
            event_type=event_type,
        )


class UnknownCreditPackage(PermanentEventError):
    """The credit package referenced by a checkout session does not exist."""


class UnknownSubscriptionPlan(PermanentEventError):
    """The subscription plan referenced by an event does not exist."""


class InvalidSubscriptionTransition(BillingError):
    """The subscription state machine rejected an event for the current state."""

    def __init__(self, current_state: str, event: str, stripe_subscription_id: Optional[str] = None):
        super().__init__(f"Transition rejected: state={current_state}, event={event}")
        self.current_state = current_state
        self.event = event
        self.stripe_subscription_id = stripe_subscription_id


class LedgerTransactionFailure(BillingError):
    """
    Infrastructure failure during a balance mutation.

    The session has been rolled back; balance and ledger are unchanged.
    Safe to retry at the caller's discretion.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ChargeFailed(BillingError):
    """Post-operation deduction failed under the FAIL_OPERATION policy."""

    def __init__(self, message: str, required: int = 0, available: Optional[int] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class RefundNotAllowed(BillingError):
    """Payment is not refundable (not succeeded, or already refunded)."""


class ManualReconciliationRequired(BillingError):
    """Credits could not be clawed back without driving a balance negative."""

    def __init__(self, message: str, payment_transaction_id: Optional[str] = None,
                 required: int = 0, available: int = 0):
        super().__init__(message)
        self.payment_transaction_id = payment_transaction_id
        self.required = required
        self.available = available


class NotFoundError(BillingError):
    """A referenced billing entity does not exist."""


class StripeGatewayError(BillingError):
    """A call to the Stripe API failed."""
