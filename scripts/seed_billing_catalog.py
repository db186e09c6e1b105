"""
Script to seed default credit pricing, credit packages and subscription plans.
Existing rows are left untouched.
Run: python -m scripts.seed_billing_catalog
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import SessionLocal
from app.services.credit_ledger import CreditLedger
from app.services.payment_processor import PaymentEventProcessor
from app.services.pricing_registry import PricingRegistry
from app.services.stripe_service import StripeGateway
from app.services.subscription_lifecycle import SubscriptionLifecycleManager
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def seed_catalog(db) -> dict:
    """Insert missing default catalog rows. Returns rows created per table."""
    ledger = CreditLedger(db)
    gateway = StripeGateway()

    return {
        "credit_pricing": PricingRegistry(db).initialize_defaults(),
        "credit_packages": PaymentEventProcessor(db, ledger, gateway).initialize_default_packages(),
        "subscription_plans": SubscriptionLifecycleManager(db, ledger, gateway).initialize_default_plans(),
    }


if __name__ == "__main__":
    db = SessionLocal()
    try:
        created = seed_catalog(db)
    except Exception:
        db.rollback()
        logger.error("Seeding billing catalog failed", exc_info=True)
        sys.exit(1)
    finally:
        db.close()

    for table, count in created.items():
        print(f"[OK] {table}: {count} created")
