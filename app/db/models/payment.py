from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Text
from sqlalchemy.sql import func
from app.db.base import Base


class CreditPackage(Base):
    """One-time purchasable credit pack."""
    __tablename__ = "credit_packages"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    credit_amount = Column(Integer, nullable=False)
    pool = Column(String(32), default="cv_processing", nullable=False)
    price = Column(Integer, nullable=False)  # minor units (cents)
    currency = Column(String(3), default="USD", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PaymentAttempt(Base):
    """
    Checkout initiated by an organization.

    status: initiated -> succeeded | failed
    """
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    credit_package_id = Column(Integer, ForeignKey("credit_packages.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), default="initiated", nullable=False)
    stripe_session_id = Column(String, nullable=True, index=True)
    transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class PaymentTransaction(Base):
    """
    Completed credit purchase. Exactly one row per Stripe checkout session.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    stripe_checkout_session_id = Column(String, unique=True, nullable=False)
    stripe_payment_intent_id = Column(String, nullable=True)
    credit_package_id = Column(Integer, ForeignKey("credit_packages.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), default="succeeded", nullable=False)  # succeeded | refunded
    pool = Column(String(32), nullable=False)
    credits_purchased = Column(Integer, nullable=False)
    credits_added = Column(Integer, nullable=False)
    refunded_amount = Column(Integer, default=0, nullable=False)
    refunded_credits = Column(Integer, default=0, nullable=False)
    refund_reason = Column(Text, nullable=True)
    stripe_refund_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
