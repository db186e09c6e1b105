"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from app.db.models.organization import Organization
from app.db.models.user import User
from app.db.models.credit import CreditBalance, CreditTransaction, CreditPricing, CreditLot
from app.db.models.payment import CreditPackage, PaymentAttempt, PaymentTransaction
from app.db.models.subscription import SubscriptionPlan, OrganizationSubscription, SubscriptionInvoice

# Explicitly export all models for clarity
__all__ = [
    "Organization",
    "User",
    "CreditBalance",
    "CreditTransaction",
    "CreditPricing",
    "CreditLot",
    "CreditPackage",
    "PaymentAttempt",
    "PaymentTransaction",
    "SubscriptionPlan",
    "OrganizationSubscription",
    "SubscriptionInvoice",
]
