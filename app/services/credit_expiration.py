"""
Expiry of subscription credits.

Each subscription allocation is recorded as a CreditLot. Ordinary spending
draws lots down, so a lot's remaining_credits is what is still unspent. When
a lot expires its remainder is removed from the pool through the ledger.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.credit_pools import TransactionType
from app.db.models.credit import CreditLot
from app.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiredLot:
    lot_id: int
    organization_id: int
    pool: str
    expired_credits: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditExpirationService:
    """Finds expired lots and removes their unspent credits."""

    def __init__(self, db: Session, ledger: CreditLedger):
        self.db = db
        self.ledger = ledger

    def get_expiring(self, organization_id: int, within_days: int = 7,
                     now: Optional[datetime] = None) -> List[CreditLot]:
        """Lots with credits left that expire within the given number of days."""
        now = now or _utcnow()
        return self.ledger.expiring_lots(organization_id, now + timedelta(days=within_days))

    def expire_due(self, now: Optional[datetime] = None) -> List[ExpiredLot]:
        """
        Expire every lot whose expiry time has passed.

        A lot whose remainder was spent concurrently is left for the next run.

        Raises:
            LedgerTransactionFailure: Database failure while expiring a lot
        """
        now = now or _utcnow()
        due_ids = self.db.execute(
            select(CreditLot.id)
            .where(CreditLot.is_expired.is_(False), CreditLot.expires_at <= now)
            .order_by(CreditLot.expires_at, CreditLot.id)
        ).scalars().all()

        expired = []
        for lot_id in due_ids:
            result = self._expire_lot(lot_id)
            if result is not None:
                expired.append(result)

        logger.info(f"Credit expiration run: due={len(due_ids)}, expired={len(expired)}")
        return expired

    def _expire_lot(self, lot_id: int) -> Optional[ExpiredLot]:
        lot = self.db.get(CreditLot, lot_id)
        if lot is None or lot.is_expired:
            return None

        # Credits granted outside lots may already have been clawed back
        balance = self.ledger.get_pool_balance(lot.organization_id, lot.pool)
        amount = min(lot.remaining_credits, balance)

        if amount > 0:
            result = self.ledger.deduct(
                lot.organization_id,
                lot.pool,
                amount,
                TransactionType.EXPIRATION,
                f"{amount} {lot.pool} credits expired ({lot.source} grant of {lot.credit_amount})",
                related_id=f"lot:{lot.id}",
                commit=False,
            )
            if not result.ok:
                self.db.rollback()
                logger.warning(
                    f"Credit lot {lot_id} not expired, balance changed concurrently: "
                    f"org_id={lot.organization_id}, pool={lot.pool}, required={amount}"
                )
                return None

        lot.expired_credits = amount
        lot.remaining_credits = 0
        lot.is_expired = True
        self.db.commit()

        logger.info(
            f"Credits expired: org_id={lot.organization_id}, pool={lot.pool}, "
            f"amount={amount}, lot_id={lot.id}"
        )
        return ExpiredLot(lot.id, lot.organization_id, lot.pool, amount)
