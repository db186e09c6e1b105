"""
Subscription lifecycle: state machine and periodic credit allocation.

Handles customer.subscription.created/updated/deleted, invoice.paid and
invoice.payment_failed events. Events arrive at least once and in any order,
so every handler is idempotent by Stripe identifiers and a subscription that
is referenced before it has been seen is created lazily from metadata. A
record created from an invoice is provisional: the first subscription
snapshot that arrives for it is applied as if no record existed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.credit_pools import CV_PROCESSING, INTERVIEW, TransactionType
from app.core.errors import (
    InvalidSubscriptionTransition,
    MissingMetadata,
    NotFoundError,
    UnknownSubscriptionPlan,
)
from app.db.models.subscription import OrganizationSubscription, SubscriptionInvoice, SubscriptionPlan
from app.services.credit_ledger import CreditLedger
from app.services.stripe_service import StripeGateway
from app.services.webhook_payloads import (
    META_ORGANIZATION_ID,
    META_PLAN_ID,
    EventOutcome,
    InvoiceSnapshot,
    StripeEvent,
    SubscriptionSnapshot,
    extract_invoice,
    extract_subscription,
)

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class SubscriptionEvent(str, Enum):
    CREATED_TRIALING = "created_trialing"
    CREATED_ACTIVE = "created_active"
    UPDATED_TRIALING = "updated_trialing"
    UPDATED_ACTIVE = "updated_active"
    UPDATED_PAST_DUE = "updated_past_due"
    UPDATED_CANCELED = "updated_canceled"
    DELETED = "deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"


# Table entry for a rejected transition
REJECT = None

S = SubscriptionState
E = SubscriptionEvent

TRANSITIONS: Dict[Tuple[SubscriptionState, SubscriptionEvent], Optional[SubscriptionState]] = {
    # No local record yet: created events, and lazy creation when other events win the race
    (S.NONE, E.CREATED_TRIALING): S.TRIALING,
    (S.NONE, E.CREATED_ACTIVE): S.ACTIVE,
    (S.NONE, E.UPDATED_TRIALING): S.TRIALING,
    (S.NONE, E.UPDATED_ACTIVE): S.ACTIVE,
    (S.NONE, E.UPDATED_PAST_DUE): S.PAST_DUE,
    (S.NONE, E.UPDATED_CANCELED): S.CANCELED,
    (S.NONE, E.DELETED): S.CANCELED,
    (S.NONE, E.INVOICE_PAID): S.ACTIVE,
    (S.NONE, E.INVOICE_PAYMENT_FAILED): S.PAST_DUE,

    (S.TRIALING, E.CREATED_TRIALING): S.TRIALING,
    (S.TRIALING, E.CREATED_ACTIVE): S.TRIALING,
    (S.TRIALING, E.UPDATED_TRIALING): S.TRIALING,
    (S.TRIALING, E.UPDATED_ACTIVE): S.ACTIVE,
    (S.TRIALING, E.UPDATED_PAST_DUE): S.PAST_DUE,
    (S.TRIALING, E.UPDATED_CANCELED): S.CANCELED,
    (S.TRIALING, E.DELETED): S.CANCELED,
    (S.TRIALING, E.INVOICE_PAID): S.TRIALING,
    (S.TRIALING, E.INVOICE_PAYMENT_FAILED): S.PAST_DUE,

    (S.ACTIVE, E.CREATED_TRIALING): S.ACTIVE,
    (S.ACTIVE, E.CREATED_ACTIVE): S.ACTIVE,
    (S.ACTIVE, E.UPDATED_TRIALING): REJECT,
    (S.ACTIVE, E.UPDATED_ACTIVE): S.ACTIVE,
    (S.ACTIVE, E.UPDATED_PAST_DUE): S.PAST_DUE,
    (S.ACTIVE, E.UPDATED_CANCELED): S.CANCELED,
    (S.ACTIVE, E.DELETED): S.CANCELED,
    (S.ACTIVE, E.INVOICE_PAID): S.ACTIVE,
    (S.ACTIVE, E.INVOICE_PAYMENT_FAILED): S.PAST_DUE,

    (S.PAST_DUE, E.CREATED_TRIALING): S.PAST_DUE,
    (S.PAST_DUE, E.CREATED_ACTIVE): S.PAST_DUE,
    (S.PAST_DUE, E.UPDATED_TRIALING): REJECT,
    (S.PAST_DUE, E.UPDATED_ACTIVE): S.ACTIVE,
    (S.PAST_DUE, E.UPDATED_PAST_DUE): S.PAST_DUE,
    (S.PAST_DUE, E.UPDATED_CANCELED): S.CANCELED,
    (S.PAST_DUE, E.DELETED): S.CANCELED,
    (S.PAST_DUE, E.INVOICE_PAID): S.ACTIVE,
    (S.PAST_DUE, E.INVOICE_PAYMENT_FAILED): S.PAST_DUE,

    # Terminal
    (S.CANCELED, E.CREATED_TRIALING): S.CANCELED,
    (S.CANCELED, E.CREATED_ACTIVE): S.CANCELED,
    (S.CANCELED, E.UPDATED_TRIALING): REJECT,
    (S.CANCELED, E.UPDATED_ACTIVE): REJECT,
    (S.CANCELED, E.UPDATED_PAST_DUE): REJECT,
    (S.CANCELED, E.UPDATED_CANCELED): S.CANCELED,
    (S.CANCELED, E.DELETED): S.CANCELED,
    # Credits that were paid for are still allocated; the record stays canceled
    (S.CANCELED, E.INVOICE_PAID): S.CANCELED,
    (S.CANCELED, E.INVOICE_PAYMENT_FAILED): REJECT,
}

del S, E


def validate_transition_table(table=TRANSITIONS) -> None:
    """Every (state, event) pair must be decided and no transition may lead back to NONE."""
    missing = [
        (state.value, event.value)
        for state in SubscriptionState
        for event in SubscriptionEvent
        if (state, event) not in table
    ]
    if missing:
        raise RuntimeError(f"Subscription transition table is incomplete: {missing}")

    invalid = [key for key, target in table.items() if target is SubscriptionState.NONE]
    if invalid:
        raise RuntimeError(f"Transitions into 'none' are not allowed: {invalid}")


validate_transition_table()


def next_state(
    current: SubscriptionState,
    event: SubscriptionEvent,
    stripe_subscription_id: Optional[str] = None,
) -> SubscriptionState:
    """
    Raises:
        InvalidSubscriptionTransition: The table rejects the event in this state
    """
    target = TRANSITIONS[(SubscriptionState(current), SubscriptionEvent(event))]
    if target is REJECT:
        raise InvalidSubscriptionTransition(
            SubscriptionState(current).value, SubscriptionEvent(event).value, stripe_subscription_id
        )
    return target


# Stripe subscription status -> lifecycle event; statuses not listed are ignored
STRIPE_STATUS_EVENTS: Dict[str, SubscriptionEvent] = {
    "trialing": SubscriptionEvent.UPDATED_TRIALING,
    "active": SubscriptionEvent.UPDATED_ACTIVE,
    "past_due": SubscriptionEvent.UPDATED_PAST_DUE,
    "unpaid": SubscriptionEvent.UPDATED_PAST_DUE,
    "canceled": SubscriptionEvent.UPDATED_CANCELED,
    "incomplete_expired": SubscriptionEvent.UPDATED_CANCELED,
}

NON_CANCELED_STATES = (
    SubscriptionState.TRIALING.value,
    SubscriptionState.ACTIVE.value,
    SubscriptionState.PAST_DUE.value,
)

YEARLY_DISCOUNT = 0.18

DEFAULT_SUBSCRIPTION_PLANS: List[Dict] = [
    {
        "name": "Starter",
        "description": "200 CV + 100 Interview Credits/month",
        "monthly_price": 2900000,
        "monthly_cv_credits": 200,
        "monthly_interview_credits": 100,
        "job_posts_limit": 5,
        "support_level": "standard",
        "sort_order": 1,
    },
    {
        "name": "Growth",
        "description": "500 CV + 200 Interview Credits/month",
        "monthly_price": 3900000,
        "monthly_cv_credits": 500,
        "monthly_interview_credits": 200,
        "job_posts_limit": 15,
        "support_level": "priority",
        "sort_order": 2,
    },
    {
        "name": "Pro",
        "description": "700 CV + 300 Interview Credits/month",
        "monthly_price": 4900000,
        "monthly_cv_credits": 700,
        "monthly_interview_credits": 300,
        "job_posts_limit": None,
        "support_level": "priority",
        "sort_order": 3,
    },
    {
        "name": "Enterprise",
        "description": "2500 CV + 1000 Interview Credits/month (Custom)",
        "monthly_price": 0,
        "monthly_cv_credits": 2500,
        "monthly_interview_credits": 1000,
        "job_posts_limit": None,
        "support_level": "dedicated",
        "sort_order": 4,
    },
]


@dataclass(frozen=True)
class JobPostQuota:
    allowed: bool
    used: int
    limit: Optional[int]  # None = unlimited
    plan_name: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def credits_for_period(plan: SubscriptionPlan, billing_cycle: str) -> Dict[str, int]:
    """Credits a paid invoice grants, per pool."""
    months = 12 if billing_cycle == "yearly" else 1
    return {
        CV_PROCESSING: (plan.monthly_cv_credits or 0) * months,
        INTERVIEW: (plan.monthly_interview_credits or 0) * months,
    }


class SubscriptionLifecycleManager:
    """Applies verified subscription and invoice events to local records."""

    def __init__(
        self,
        db: Session,
        ledger: CreditLedger,
        gateway: Optional[StripeGateway] = None,
        past_due_grace_days: int = 7,
        credit_expiration_days: int = 45,
    ):
        self.db = db
        self.ledger = ledger
        self.gateway = gateway
        self.past_due_grace_days = past_due_grace_days
        self.credit_expiration_days = credit_expiration_days

    # ------------------------------------------------------------------
    # Subscription events
    # ------------------------------------------------------------------

    def on_subscription_created(self, event: StripeEvent) -> EventOutcome:
        snapshot = extract_subscription(event.data.object)

        trial_running = snapshot.has_trial and _as_utc(snapshot.trial_end) > _utcnow()
        lifecycle_event = (
            SubscriptionEvent.CREATED_TRIALING
            if snapshot.status == "trialing" or trial_running
            else SubscriptionEvent.CREATED_ACTIVE
        )

        existing = self._find(snapshot.stripe_subscription_id)
        if existing is not None and existing.provisional:
            return self._apply_subscription_snapshot(event, snapshot, lifecycle_event)
        if existing is not None:
            logger.info(
                f"Duplicate customer.subscription.created for {snapshot.stripe_subscription_id} "
                f"(event_id={event.id})"
            )
            return EventOutcome.DUPLICATE

        state = next_state(SubscriptionState.NONE, lifecycle_event, snapshot.stripe_subscription_id)

        subscription, created = self._create_from_snapshot(event, snapshot, state)
        if not created:
            return EventOutcome.DUPLICATE

        self.db.commit()
        logger.info(
            f"Subscription created: org_id={subscription.organization_id}, plan_id={subscription.plan_id}, "
            f"stripe_subscription_id={subscription.stripe_subscription_id}, status={subscription.status}"
        )
        return EventOutcome.PROCESSED

    def on_subscription_updated(self, event: StripeEvent) -> EventOutcome:
        snapshot = extract_subscription(event.data.object)

        lifecycle_event = STRIPE_STATUS_EVENTS.get(snapshot.status)
        if lifecycle_event is None:
            logger.info(
                f"Ignoring subscription {snapshot.stripe_subscription_id} update with "
                f"status={snapshot.status} (event_id={event.id})"
            )
            return EventOutcome.IGNORED

        return self._apply_subscription_snapshot(event, snapshot, lifecycle_event)

    def on_subscription_deleted(self, event: StripeEvent) -> EventOutcome:
        snapshot = extract_subscription(event.data.object)
        return self._apply_subscription_snapshot(event, snapshot, SubscriptionEvent.DELETED)

    # ------------------------------------------------------------------
    # Invoice events
    # ------------------------------------------------------------------

    def on_invoice_paid(self, event: StripeEvent) -> EventOutcome:
        """
        Allocate the plan's credits for a paid billing period, once per invoice.

        An invoice paid for a canceled subscription still allocates its credits
        and leaves the record canceled.

        Raises:
            MissingMetadata: Subscription unknown and the invoice cannot identify it
            UnknownSubscriptionPlan: Plan referenced by the subscription is gone
            LedgerTransactionFailure: Database failure, safe to redeliver
        """
        invoice = extract_invoice(event.data.object)
        if not invoice.stripe_subscription_id:
            logger.info(f"Ignoring invoice {invoice.invoice_id} without a subscription (event_id={event.id})")
            return EventOutcome.IGNORED

        subscription = self._find(invoice.stripe_subscription_id)
        if subscription and self._invoice_recorded(subscription.id, invoice.invoice_id):
            logger.info(
                f"Duplicate invoice.paid for invoice {invoice.invoice_id} "
                f"(subscription_id={subscription.id}, event_id={event.id})"
            )
            return EventOutcome.DUPLICATE

        current = SubscriptionState(subscription.status) if subscription else SubscriptionState.NONE
        state = next_state(current, SubscriptionEvent.INVOICE_PAID, invoice.stripe_subscription_id)

        if subscription is None:
            subscription = self._lazy_create_from_invoice(event, invoice, state)
            if self._invoice_recorded(subscription.id, invoice.invoice_id):
                self.db.rollback()
                return EventOutcome.DUPLICATE

        plan = self._get_plan(subscription.plan_id, event)
        allocation = credits_for_period(plan, subscription.billing_cycle)

        try:
            record = SubscriptionInvoice(
                subscription_id=subscription.id,
                organization_id=subscription.organization_id,
                stripe_invoice_id=invoice.invoice_id,
                amount=invoice.amount_paid,
                currency=(invoice.currency or plan.currency).upper(),
                status="paid",
                cv_credits_allocated=allocation[CV_PROCESSING],
                interview_credits_allocated=allocation[INTERVIEW],
                paid_at=invoice.paid_at or _utcnow(),
            )
            self.db.add(record)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Concurrent duplicate invoice.paid for invoice {invoice.invoice_id} (event_id={event.id})")
            return EventOutcome.DUPLICATE

        cycle_label = "yearly" if subscription.billing_cycle == "yearly" else "monthly"
        expires_at = self.credit_expiry(invoice.period_end)
        for pool, amount in allocation.items():
            if amount <= 0:
                continue
            self.ledger.add(
                subscription.organization_id,
                pool,
                amount,
                TransactionType.SUBSCRIPTION,
                f"{plan.name} {cycle_label} allocation: {amount} {pool} credits",
                related_id=invoice.invoice_id,
                commit=False,
                expires_at=expires_at,
            )

        if state is SubscriptionState.CANCELED:
            logger.warning(
                f"Paid invoice {invoice.invoice_id} for canceled subscription "
                f"{subscription.stripe_subscription_id}: credits allocated, status unchanged "
                f"(org_id={subscription.organization_id}, event_id={event.id})"
            )
        else:
            subscription.status = state.value
            subscription.job_posts_used = 0
            if invoice.period_start and invoice.period_end:
                subscription.current_period_start = invoice.period_start
                subscription.current_period_end = invoice.period_end

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Concurrent duplicate invoice.paid detected at commit for invoice {invoice.invoice_id}")
            return EventOutcome.DUPLICATE

        logger.info(
            f"Subscription credits allocated: org_id={subscription.organization_id}, "
            f"subscription_id={subscription.id}, invoice={invoice.invoice_id}, "
            f"cv={allocation[CV_PROCESSING]}, interview={allocation[INTERVIEW]}"
        )
        return EventOutcome.PROCESSED

    def on_invoice_payment_failed(self, event: StripeEvent) -> EventOutcome:
        """Move the subscription to past_due. Balances are never touched."""
        invoice = extract_invoice(event.data.object)
        if not invoice.stripe_subscription_id:
            logger.info(f"Ignoring failed invoice {invoice.invoice_id} without a subscription (event_id={event.id})")
            return EventOutcome.IGNORED

        subscription = self._find(invoice.stripe_subscription_id)
        current = SubscriptionState(subscription.status) if subscription else SubscriptionState.NONE
        state = next_state(current, SubscriptionEvent.INVOICE_PAYMENT_FAILED, invoice.stripe_subscription_id)

        if subscription is None:
            subscription = self._lazy_create_from_invoice(event, invoice, state)
        subscription.status = state.value
        self.db.commit()

        logger.warning(
            f"Invoice payment failed: org_id={subscription.organization_id}, "
            f"stripe_subscription_id={subscription.stripe_subscription_id}, invoice={invoice.invoice_id}"
        )
        return EventOutcome.PROCESSED

    # ------------------------------------------------------------------
    # Queries and outbound actions
    # ------------------------------------------------------------------

    def list_plans(self) -> List[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).filter(
            SubscriptionPlan.is_active.is_(True)
        ).order_by(SubscriptionPlan.sort_order).all()

    def get_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()

    def get_active_subscription(self, organization_id: int) -> Optional[OrganizationSubscription]:
        """The organization's current non-canceled subscription, if any."""
        return self.db.query(OrganizationSubscription).filter(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.status.in_(NON_CANCELED_STATES),
        ).order_by(OrganizationSubscription.created_at.desc(), OrganizationSubscription.id.desc()).first()

    def is_usable(self, subscription: OrganizationSubscription, now: Optional[datetime] = None) -> bool:
        """
        Active and trialing subscriptions are usable; past_due ones only within
        the grace period after the end of the current billing period.
        """
        if subscription.status in (SubscriptionState.ACTIVE.value, SubscriptionState.TRIALING.value):
            return True
        if subscription.status != SubscriptionState.PAST_DUE.value:
            return False

        period_end = _as_utc(subscription.current_period_end)
        if period_end is None:
            return False
        now = now or _utcnow()
        return now <= period_end + timedelta(days=self.past_due_grace_days)

    def credit_expiry(self, period_end: Optional[datetime], now: Optional[datetime] = None) -> Optional[datetime]:
        """
        When credits allocated now expire: credit_expiration_days from now, or
        the end of the paid period if that is later (yearly plans). None when
        expiry is disabled.
        """
        if self.credit_expiration_days <= 0:
            return None
        expires_at = (now or _utcnow()) + timedelta(days=self.credit_expiration_days)
        period_end = _as_utc(period_end)
        if period_end is not None and period_end > expires_at:
            return period_end
        return expires_at

    def job_post_quota(self, subscription: OrganizationSubscription) -> JobPostQuota:
        plan = self.get_plan(subscription.plan_id)
        limit = plan.job_posts_limit if plan else 0
        used = subscription.job_posts_used or 0
        return JobPostQuota(
            allowed=limit is None or used < limit,
            used=used,
            limit=limit,
            plan_name=plan.name if plan else None,
        )

    def record_job_post(self, subscription: OrganizationSubscription) -> bool:
        """
        Count one job post against the current period.

        Returns:
            False when the plan's limit has already been reached
        """
        plan = self.get_plan(subscription.plan_id)
        query = update(OrganizationSubscription).where(OrganizationSubscription.id == subscription.id)
        if plan is None or plan.job_posts_limit is not None:
            limit = plan.job_posts_limit if plan else 0
            query = query.where(OrganizationSubscription.job_posts_used < limit)

        updated = self.db.execute(
            query.values(job_posts_used=OrganizationSubscription.job_posts_used + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        self.db.refresh(subscription)

        if not updated:
            logger.info(
                f"Job post limit reached: org_id={subscription.organization_id}, "
                f"subscription_id={subscription.id}, used={subscription.job_posts_used}"
            )
            return False

        logger.info(
            f"Job post recorded: org_id={subscription.organization_id}, "
            f"subscription_id={subscription.id}, used={subscription.job_posts_used}"
        )
        return True

    def create_checkout(
        self,
        organization_id: int,
        plan_id: int,
        billing_cycle: str = "monthly",
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        customer_email: Optional[str] = None,
        trial_days: Optional[int] = None,
    ) -> Dict:
        """
        Start a Stripe subscription checkout. No local record is written; the
        subscription appears once its webhook events arrive.

        Raises:
            NotFoundError: Plan does not exist or is inactive
            ValueError: Invalid billing cycle or a plan without self-serve pricing
        """
        if billing_cycle not in ("monthly", "yearly"):
            raise ValueError(f"Invalid billing cycle: {billing_cycle}")

        plan = self.db.query(SubscriptionPlan).filter(
            SubscriptionPlan.id == plan_id,
            SubscriptionPlan.is_active.is_(True),
        ).first()
        if not plan:
            raise NotFoundError(f"Subscription plan {plan_id} not found")

        price = plan.yearly_price if billing_cycle == "yearly" else plan.monthly_price
        if price <= 0:
            raise ValueError(f"Plan {plan.name} has custom pricing, contact sales")

        session = self.gateway.create_subscription_checkout_session(
            organization_id=organization_id,
            plan_id=plan.id,
            plan_name=plan.name,
            billing_cycle=billing_cycle,
            price=price,
            currency=plan.currency,
            trial_days=trial_days,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=customer_email,
        )
        return {"session_id": session.id, "url": session.url}

    def request_cancellation(self, organization_id: int, immediate: bool = False) -> OrganizationSubscription:
        """
        Ask Stripe to cancel the organization's subscription. The local record
        changes only when the resulting webhook arrives.

        Raises:
            NotFoundError: No active subscription
        """
        subscription = self.get_active_subscription(organization_id)
        if not subscription:
            raise NotFoundError(f"No active subscription for organization {organization_id}")

        if immediate:
            self.gateway.cancel_subscription(subscription.stripe_subscription_id)
        else:
            self.gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, True)

        logger.info(
            f"Cancellation requested: org_id={organization_id}, "
            f"stripe_subscription_id={subscription.stripe_subscription_id}, immediate={immediate}"
        )
        return subscription

    def initialize_default_plans(self) -> int:
        """Insert default subscription plans that do not exist yet. Returns rows created."""
        created = 0
        for plan_data in DEFAULT_SUBSCRIPTION_PLANS:
            existing = self.db.query(SubscriptionPlan).filter(
                SubscriptionPlan.name == plan_data["name"]
            ).first()
            if existing:
                continue
            yearly_price = round(plan_data["monthly_price"] * (1 - YEARLY_DISCOUNT) * 12)
            self.db.add(SubscriptionPlan(currency="EGP", yearly_price=yearly_price, **plan_data))
            created += 1

        self.db.commit()
        logger.info(f"Default subscription plans initialized: created={created}")
        return created

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find(self, stripe_subscription_id: str) -> Optional[OrganizationSubscription]:
        return self.db.query(OrganizationSubscription).filter(
            OrganizationSubscription.stripe_subscription_id == stripe_subscription_id
        ).first()

    def _invoice_recorded(self, subscription_id: int, stripe_invoice_id: str) -> bool:
        return self.db.query(SubscriptionInvoice.id).filter(
            SubscriptionInvoice.subscription_id == subscription_id,
            SubscriptionInvoice.stripe_invoice_id == stripe_invoice_id,
        ).first() is not None

    def _get_plan(self, plan_id: Optional[int], event: StripeEvent) -> SubscriptionPlan:
        plan = self.get_plan(plan_id) if plan_id is not None else None
        if not plan:
            raise UnknownSubscriptionPlan(
                f"Subscription plan {plan_id} not found",
                event_id=event.id,
                event_type=event.type,
            )
        return plan

    def _apply_subscription_snapshot(
        self,
        event: StripeEvent,
        snapshot: SubscriptionSnapshot,
        lifecycle_event: SubscriptionEvent,
    ) -> EventOutcome:
        subscription = self._find(snapshot.stripe_subscription_id)
        current = SubscriptionState(subscription.status) if subscription else SubscriptionState.NONE
        provisional = subscription is not None and subscription.provisional
        # A provisional state was guessed from an invoice; the snapshot decides it
        state = next_state(
            SubscriptionState.NONE if provisional else current,
            lifecycle_event,
            snapshot.stripe_subscription_id,
        )

        if subscription is None:
            subscription, _ = self._create_from_snapshot(event, snapshot, state)
        else:
            if provisional:
                logger.info(
                    f"Subscription {subscription.stripe_subscription_id} confirmed by {event.type}, "
                    f"replacing provisional status={subscription.status}"
                )
                subscription.provisional = False
                subscription.stripe_customer_id = snapshot.stripe_customer_id or subscription.stripe_customer_id
                subscription.billing_cycle = snapshot.billing_cycle or subscription.billing_cycle
            subscription.status = state.value
            subscription.current_period_start = snapshot.current_period_start or subscription.current_period_start
            subscription.current_period_end = snapshot.current_period_end or subscription.current_period_end
            subscription.cancel_at_period_end = snapshot.cancel_at_period_end
            subscription.trial_start = snapshot.trial_start
            subscription.trial_end = snapshot.trial_end
            subscription.canceled_at = snapshot.canceled_at
            if snapshot.plan_id is not None and snapshot.plan_id != subscription.plan_id:
                if self.get_plan(snapshot.plan_id):
                    logger.info(
                        f"Subscription {subscription.stripe_subscription_id} plan changed: "
                        f"{subscription.plan_id} -> {snapshot.plan_id}"
                    )
                    subscription.plan_id = snapshot.plan_id
                else:
                    logger.warning(f"Ignoring unknown plan_id={snapshot.plan_id} on subscription update")

        if state is SubscriptionState.CANCELED and subscription.canceled_at is None:
            subscription.canceled_at = _utcnow()

        self.db.commit()
        logger.info(
            f"Subscription {subscription.stripe_subscription_id}: {current.value} -> {state.value} "
            f"(event={lifecycle_event.value}, event_id={event.id})"
        )
        return EventOutcome.PROCESSED

    def _create_from_snapshot(
        self,
        event: StripeEvent,
        snapshot: SubscriptionSnapshot,
        state: SubscriptionState,
    ) -> Tuple[OrganizationSubscription, bool]:
        return self._create_record(
            event,
            stripe_subscription_id=snapshot.stripe_subscription_id,
            organization_id=snapshot.organization_id,
            plan_id=snapshot.plan_id,
            state=state,
            stripe_customer_id=snapshot.stripe_customer_id,
            billing_cycle=snapshot.billing_cycle,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            trial_start=snapshot.trial_start,
            trial_end=snapshot.trial_end,
            canceled_at=snapshot.canceled_at,
        )

    def _lazy_create_from_invoice(
        self,
        event: StripeEvent,
        invoice: InvoiceSnapshot,
        state: SubscriptionState,
    ) -> OrganizationSubscription:
        logger.info(
            f"Invoice {invoice.invoice_id} arrived before subscription {invoice.stripe_subscription_id}, "
            f"creating it from invoice metadata"
        )
        subscription, _ = self._create_record(
            event,
            stripe_subscription_id=invoice.stripe_subscription_id,
            organization_id=invoice.organization_id,
            plan_id=invoice.plan_id,
            state=state,
            stripe_customer_id=invoice.stripe_customer_id,
            billing_cycle=invoice.billing_cycle,
            current_period_start=invoice.period_start,
            current_period_end=invoice.period_end,
            provisional=True,
        )
        return subscription

    def _create_record(
        self,
        event: StripeEvent,
        stripe_subscription_id: str,
        organization_id: Optional[int],
        plan_id: Optional[int],
        state: SubscriptionState,
        **fields,
    ) -> Tuple[OrganizationSubscription, bool]:
        """
        Insert a subscription record (flushed, not committed).

        Returns:
            (record, created); created is False when a concurrent delivery
            inserted the same Stripe subscription first

        Raises:
            MissingMetadata: organizationId or planId absent
            UnknownSubscriptionPlan: planId does not exist
        """
        missing = [
            name for name, value in ((META_ORGANIZATION_ID, organization_id), (META_PLAN_ID, plan_id))
            if value is None
        ]
        if missing:
            raise MissingMetadata(missing, event_id=event.id, event_type=event.type)
        self._get_plan(plan_id, event)

        if state is not SubscriptionState.CANCELED:
            self._supersede_existing(organization_id, stripe_subscription_id)

        subscription = OrganizationSubscription(
            organization_id=organization_id,
            plan_id=plan_id,
            stripe_subscription_id=stripe_subscription_id,
            status=state.value,
            **fields,
        )
        if state is SubscriptionState.CANCELED and subscription.canceled_at is None:
            subscription.canceled_at = _utcnow()

        try:
            self.db.add(subscription)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Subscription {stripe_subscription_id} was created concurrently")
            existing = self._find(stripe_subscription_id)
            if existing is None:
                raise
            return existing, False

        return subscription, True

    def _supersede_existing(self, organization_id: int, stripe_subscription_id: str) -> None:
        """A new subscription replaces any earlier non-canceled one of the organization."""
        earlier = self.db.query(OrganizationSubscription).filter(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.stripe_subscription_id != stripe_subscription_id,
            OrganizationSubscription.status.in_(NON_CANCELED_STATES),
        ).all()
        for subscription in earlier:
            logger.info(
                f"Subscription {subscription.stripe_subscription_id} superseded by "
                f"{stripe_subscription_id} for org_id={organization_id}"
            )
            subscription.status = SubscriptionState.CANCELED.value
            subscription.canceled_at = _utcnow()
