"""
Request-scoped service providers.

Services receive their collaborators explicitly; these providers assemble
them around the per-request database session. Tests override them through
app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from app.core import config
from app.core.credit_guard import CreditGuard, OnChargeFailure
from app.db.session import get_db
from app.services.credit_expiration import CreditExpirationService
from app.services.credit_ledger import CreditLedger
from app.services.payment_processor import PaymentEventProcessor
from app.services.pricing_registry import PricingRegistry
from app.services.stripe_service import StripeGateway
from app.services.subscription_lifecycle import SubscriptionLifecycleManager


def get_ledger(db: Session = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


def get_pricing_registry(db: Session = Depends(get_db)) -> PricingRegistry:
    return PricingRegistry(db)


def get_credit_expiration(
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditExpirationService:
    return CreditExpirationService(db, ledger)


def get_credit_guard(
    ledger: CreditLedger = Depends(get_ledger),
    pricing: PricingRegistry = Depends(get_pricing_registry),
) -> CreditGuard:
    return CreditGuard(ledger, pricing, OnChargeFailure(config.ON_CHARGE_FAILURE))


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


def get_payment_processor(
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> PaymentEventProcessor:
    return PaymentEventProcessor(db, ledger, gateway)


def get_subscription_manager(
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        db,
        ledger,
        gateway,
        past_due_grace_days=config.PAST_DUE_GRACE_DAYS,
        credit_expiration_days=config.CREDIT_EXPIRATION_DAYS,
    )
