"""
Script to compare every organization's stored balances with its ledger.
Exits with status 1 when any pool does not match.
Run: python -m scripts.reconcile_ledger [organization_id ...]
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select, union

from app.db.session import SessionLocal
from app.db.models.credit import CreditBalance, CreditTransaction
from app.services.credit_ledger import CreditLedger
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def organizations_with_credits(db) -> list:
    query = union(
        select(CreditBalance.organization_id),
        select(CreditTransaction.organization_id),
    )
    return sorted(row[0] for row in db.execute(query).all())


def reconcile_all(db, organization_ids=None) -> list:
    """
    Returns:
        List of (organization_id, pool, balance, ledger_sum) for mismatched pools
    """
    ledger = CreditLedger(db)
    mismatches = []

    for organization_id in organization_ids or organizations_with_credits(db):
        for pool, entry in ledger.reconcile(organization_id).items():
            if not entry["matches"]:
                logger.error(
                    f"Ledger mismatch: org_id={organization_id}, pool={pool}, "
                    f"balance={entry['balance']}, ledger_sum={entry['ledger_sum']}"
                )
                mismatches.append((organization_id, pool, entry["balance"], entry["ledger_sum"]))

    return mismatches


if __name__ == "__main__":
    ids = [int(arg) for arg in sys.argv[1:]]
    db = SessionLocal()
    try:
        mismatches = reconcile_all(db, ids or None)
    finally:
        db.close()

    if mismatches:
        print(f"\n[ERROR] {len(mismatches)} pool(s) out of balance")
        sys.exit(1)
    print("\n[OK] All balances match their ledgers")
