"""
Script to expire subscription credits whose lots have passed their expiry date.
Meant to run from a daily scheduler.
Run: python -m scripts.expire_credits
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import SessionLocal
from app.services.credit_expiration import CreditExpirationService
from app.services.credit_ledger import CreditLedger
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def expire_credits(db, now=None) -> int:
    """
    Returns:
        Total credits removed across all expired lots
    """
    expired = CreditExpirationService(db, CreditLedger(db)).expire_due(now=now)
    for item in expired:
        logger.info(
            f"Expired lot {item.lot_id}: org_id={item.organization_id}, "
            f"pool={item.pool}, credits={item.expired_credits}"
        )
    return sum(item.expired_credits for item in expired)


if __name__ == "__main__":
    db = SessionLocal()
    try:
        total = expire_credits(db)
    finally:
        db.close()

    print(f"\n[OK] Expired {total} credit(s)")
