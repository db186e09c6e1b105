from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Text, UniqueConstraint
from sqlalchemy.sql import func
from app.db.base import Base


class SubscriptionPlan(Base):
    """Subscription catalog entry with monthly credit allotments per pool."""
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    monthly_price = Column(Integer, nullable=False)  # minor units
    yearly_price = Column(Integer, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    monthly_cv_credits = Column(Integer, default=0, nullable=False)
    monthly_interview_credits = Column(Integer, default=0, nullable=False)
    job_posts_limit = Column(Integer, nullable=True)  # None = unlimited
    support_level = Column(String, default="standard", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrganizationSubscription(Base):
    """
    Lifecycle record for an organization's Stripe subscription.

    status: trialing | active | past_due | canceled
    """
    __tablename__ = "organization_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    stripe_subscription_id = Column(String, unique=True, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    billing_cycle = Column(String(16), default="monthly", nullable=False)
    status = Column(String(16), nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    job_posts_used = Column(Integer, default=0, nullable=False)  # reset when a new period is paid
    # Created from an invoice before any subscription snapshot was seen
    provisional = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SubscriptionInvoice(Base):
    """
    Marker for a paid invoice that has triggered credit allocation.

    The unique constraint is what makes "allocate once per invoice" hold
    under concurrent redelivery.
    """
    __tablename__ = "subscription_invoices"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("organization_subscriptions.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    stripe_invoice_id = Column(String, nullable=False)
    amount = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), nullable=True)
    status = Column(String(16), default="paid", nullable=False)
    cv_credits_allocated = Column(Integer, default=0, nullable=False)
    interview_credits_allocated = Column(Integer, default=0, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('subscription_id', 'stripe_invoice_id', name='uq_subscription_invoice'),
    )
