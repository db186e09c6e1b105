"""
Typed extraction of Stripe webhook payloads.

Stripe moved several fields between API versions (invoice -> subscription link,
subscription period bounds). Each known shape is modelled explicitly and has a
pure extraction function; nothing here touches the database.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.core.errors import MissingMetadata

# Metadata keys written by our own checkout sessions
META_ORGANIZATION_ID = "organizationId"
META_CREDIT_PACKAGE_ID = "creditPackageId"
META_PAYMENT_ATTEMPT_ID = "paymentAttemptId"
META_CREDIT_AMOUNT = "creditAmount"
META_PLAN_ID = "planId"
META_BILLING_CYCLE = "billingCycle"


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def _parse_int(metadata: Dict[str, str], key: str) -> Optional[int]:
    value = metadata.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ----------------------------------------------------------------------
# Event envelope
# ----------------------------------------------------------------------

class EventOutcome(str, Enum):
    """Result of applying a verified webhook event."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class EventData(BaseModel):
    object: Dict[str, Any] = Field(default_factory=dict)


class StripeEvent(BaseModel):
    """Verified webhook event envelope."""
    id: str
    type: str
    created: Optional[int] = None
    data: EventData = Field(default_factory=EventData)


# ----------------------------------------------------------------------
# Checkout sessions
# ----------------------------------------------------------------------

class CheckoutSessionObject(BaseModel):
    id: str
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutPurchase:
    """Fields required to grant a credit-pack purchase."""
    session_id: str
    organization_id: int
    credit_package_id: int
    credit_amount: int
    payment_attempt_id: int
    payment_intent_id: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]


def extract_checkout_purchase(event: StripeEvent) -> CheckoutPurchase:
    """
    Extract a credit purchase from a completed checkout session.

    Raises:
        MissingMetadata: If any required metadata field is absent or malformed
    """
    session = CheckoutSessionObject.model_validate(event.data.object)
    metadata = session.metadata

    organization_id = _parse_int(metadata, META_ORGANIZATION_ID)
    credit_package_id = _parse_int(metadata, META_CREDIT_PACKAGE_ID)
    credit_amount = _parse_int(metadata, META_CREDIT_AMOUNT)
    payment_attempt_id = _parse_int(metadata, META_PAYMENT_ATTEMPT_ID)
    if payment_attempt_id is None and session.client_reference_id:
        payment_attempt_id = _parse_int({"ref": session.client_reference_id}, "ref")

    missing = [
        name for name, value in (
            (META_ORGANIZATION_ID, organization_id),
            (META_CREDIT_PACKAGE_ID, credit_package_id),
            (META_CREDIT_AMOUNT, credit_amount),
            (META_PAYMENT_ATTEMPT_ID, payment_attempt_id),
        )
        if value is None
    ]
    if missing:
        raise MissingMetadata(missing, event_id=event.id, event_type=event.type)

    return CheckoutPurchase(
        session_id=session.id,
        organization_id=organization_id,
        credit_package_id=credit_package_id,
        credit_amount=credit_amount,
        payment_attempt_id=payment_attempt_id,
        payment_intent_id=session.payment_intent,
        amount_total=session.amount_total,
        currency=session.currency,
    )


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------

class SubscriptionItem(BaseModel):
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(BaseModel):
    id: str
    customer: Optional[str] = None
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    # Legacy API versions carry the period on the subscription itself
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Authoritative current state of a Stripe subscription."""
    stripe_subscription_id: str
    stripe_customer_id: Optional[str]
    status: str
    organization_id: Optional[int]
    plan_id: Optional[int]
    billing_cycle: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]

    @property
    def has_trial(self) -> bool:
        return self.trial_end is not None


def _period_from_subscription(sub: SubscriptionObject):
    return sub.current_period_start, sub.current_period_end


def _period_from_items(sub: SubscriptionObject):
    if not sub.items.data:
        return None, None
    item = sub.items.data[0]
    return item.current_period_start, item.current_period_end


def extract_subscription(obj: Dict[str, Any]) -> SubscriptionSnapshot:
    """Build a snapshot from a customer.subscription.* object."""
    sub = SubscriptionObject.model_validate(obj)

    if sub.current_period_end is not None:
        period_start, period_end = _period_from_subscription(sub)
    else:
        period_start, period_end = _period_from_items(sub)

    billing_cycle = sub.metadata.get(META_BILLING_CYCLE) or "monthly"
    if billing_cycle not in ("monthly", "yearly"):
        billing_cycle = "monthly"

    return SubscriptionSnapshot(
        stripe_subscription_id=sub.id,
        stripe_customer_id=sub.customer,
        status=sub.status,
        organization_id=_parse_int(sub.metadata, META_ORGANIZATION_ID),
        plan_id=_parse_int(sub.metadata, META_PLAN_ID),
        billing_cycle=billing_cycle,
        current_period_start=to_datetime(period_start),
        current_period_end=to_datetime(period_end),
        cancel_at_period_end=sub.cancel_at_period_end,
        canceled_at=to_datetime(sub.canceled_at),
        trial_start=to_datetime(sub.trial_start),
        trial_end=to_datetime(sub.trial_end),
    )


# ----------------------------------------------------------------------
# Invoices
# ----------------------------------------------------------------------

class InvoiceLinePeriod(BaseModel):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(BaseModel):
    period: InvoiceLinePeriod = Field(default_factory=InvoiceLinePeriod)


class InvoiceLines(BaseModel):
    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceStatusTransitions(BaseModel):
    paid_at: Optional[int] = None


class InvoiceBase(BaseModel):
    id: str
    customer: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    status: Optional[str] = None
    lines: InvoiceLines = Field(default_factory=InvoiceLines)
    status_transitions: InvoiceStatusTransitions = Field(default_factory=InvoiceStatusTransitions)


class LegacySubscriptionDetails(BaseModel):
    metadata: Dict[str, str] = Field(default_factory=dict)


class LegacyInvoice(InvoiceBase):
    """Invoice with top-level `subscription` and `subscription_details`."""
    shape: Literal["legacy"] = "legacy"
    subscription: Optional[str] = None
    subscription_details: LegacySubscriptionDetails = Field(default_factory=LegacySubscriptionDetails)


class ParentSubscriptionDetails(BaseModel):
    subscription: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class InvoiceParent(BaseModel):
    type: str
    subscription_details: Optional[ParentSubscriptionDetails] = None


class ParentInvoice(InvoiceBase):
    """Invoice linking its subscription through `parent.subscription_details`."""
    shape: Literal["parent"] = "parent"
    parent: InvoiceParent


InvoiceShape = Union[LegacyInvoice, ParentInvoice]


@dataclass(frozen=True)
class InvoiceSnapshot:
    invoice_id: str
    stripe_subscription_id: Optional[str]
    stripe_customer_id: Optional[str]
    amount_paid: int
    currency: Optional[str]
    status: Optional[str]
    organization_id: Optional[int]
    plan_id: Optional[int]
    billing_cycle: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    paid_at: Optional[datetime]


def parse_invoice_shape(obj: Dict[str, Any]) -> InvoiceShape:
    parent = obj.get("parent") or {}
    if parent.get("type") == "subscription_details":
        return ParentInvoice.model_validate(obj)
    return LegacyInvoice.model_validate(obj)


def _subscription_link_legacy(invoice: LegacyInvoice):
    return invoice.subscription, invoice.subscription_details.metadata


def _subscription_link_parent(invoice: ParentInvoice):
    details = invoice.parent.subscription_details or ParentSubscriptionDetails()
    return details.subscription, details.metadata


def extract_invoice(obj: Dict[str, Any]) -> InvoiceSnapshot:
    """Build a snapshot from an invoice.* object, whichever shape it has."""
    invoice = parse_invoice_shape(obj)
    if isinstance(invoice, ParentInvoice):
        subscription_id, metadata = _subscription_link_parent(invoice)
    else:
        subscription_id, metadata = _subscription_link_legacy(invoice)

    period_start = period_end = None
    if invoice.lines.data:
        period_start = invoice.lines.data[0].period.start
        period_end = invoice.lines.data[0].period.end

    billing_cycle = metadata.get(META_BILLING_CYCLE) or "monthly"
    if billing_cycle not in ("monthly", "yearly"):
        billing_cycle = "monthly"

    return InvoiceSnapshot(
        invoice_id=invoice.id,
        stripe_subscription_id=subscription_id,
        stripe_customer_id=invoice.customer,
        amount_paid=invoice.amount_paid,
        currency=invoice.currency,
        status=invoice.status,
        organization_id=_parse_int(metadata, META_ORGANIZATION_ID),
        plan_id=_parse_int(metadata, META_PLAN_ID),
        billing_cycle=billing_cycle,
        period_start=to_datetime(period_start),
        period_end=to_datetime(period_end),
        paid_at=to_datetime(invoice.status_transitions.paid_at),
    )
