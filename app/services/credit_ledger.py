"""
Credit ledger service.

The only code allowed to mutate credit_balances. Every mutation appends exactly
one CreditTransaction in the same database transaction, so the sum of ledger
entries for a pool always equals the pool's balance.

Deductions are a single conditional UPDATE (`balance >= amount`) rather than
read-then-write, so concurrent requests can never overdraw a pool no matter how
many processes are serving traffic.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update, func, literal_column
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.credit_pools import CREDIT_POOLS, TransactionType, is_known_pool
from app.core.errors import LedgerTransactionFailure
from app.db.models.credit import CreditBalance, CreditLot, CreditTransaction

logger = logging.getLogger(__name__)

# Deductions of these types remove credits that were never part of a lot
LOT_EXEMPT_TYPES = (TransactionType.EXPIRATION, TransactionType.REFUND)


@dataclass(frozen=True)
class InsufficientCredits:
    """Expected outcome of a deduction the pool cannot cover."""
    pool: str
    required: int
    available: int


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger mutation."""
    ok: bool
    organization_id: int
    pool: str
    amount: int
    balance: int
    transaction_id: Optional[int] = None
    insufficient: Optional[InsufficientCredits] = None


class CreditLedger:
    """
    Balance store and append-only transaction log.

    Mutations commit by default. Callers composing a larger unit of work (a
    payment record plus its grant, an invoice marker plus its allocation) pass
    commit=False and commit the session themselves.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, organization_id: int) -> Dict[str, int]:
        """
        Point-in-time balance of every pool for an organization.

        Pools without a balance row read as 0.
        """
        rows = self.db.execute(
            select(CreditBalance.pool, CreditBalance.balance)
            .where(CreditBalance.organization_id == organization_id)
        ).all()

        balances = {pool: 0 for pool in CREDIT_POOLS}
        for pool, balance in rows:
            balances[pool] = int(balance)
        return balances

    def get_pool_balance(self, organization_id: int, pool: str) -> int:
        balance = self.db.execute(
            select(CreditBalance.balance).where(
                CreditBalance.organization_id == organization_id,
                CreditBalance.pool == pool,
            )
        ).scalar_one_or_none()
        return int(balance or 0)

    def check_sufficient(self, organization_id: int, pool: str, amount: int) -> bool:
        """
        Read-only sufficiency check. This is NOT a reservation: a concurrent
        request may spend the credits before a subsequent deduct().
        """
        self._validate_pool(pool)
        if amount < 0:
            raise ValueError(f"Amount must be non-negative, got {amount}")
        return self.get_pool_balance(organization_id, pool) >= amount

    def history(self, organization_id: int, limit: int = 50, pool: Optional[str] = None) -> List[CreditTransaction]:
        """Ledger entries, newest first."""
        query = select(CreditTransaction).where(CreditTransaction.organization_id == organization_id)
        if pool:
            query = query.where(CreditTransaction.pool == pool)
        query = query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit)
        return list(self.db.execute(query).scalars().all())

    def expiring_lots(self, organization_id: int, before: datetime) -> List[CreditLot]:
        """Unexpired lots with credits left that expire before the given time, soonest first."""
        return list(self.db.execute(
            select(CreditLot)
            .where(
                CreditLot.organization_id == organization_id,
                CreditLot.is_expired.is_(False),
                CreditLot.remaining_credits > 0,
                CreditLot.expires_at < before,
            )
            .order_by(CreditLot.expires_at, CreditLot.id)
        ).scalars().all())

    def usage_stats(self, organization_id: int) -> Dict:
        """
        Aggregate grants and deductions for an organization.

        Recomputed from the ledger on every call, never cached.

        Returns:
            Dictionary with total_added, total_deducted, per-pool totals,
            deduction counts by transaction type and by action type
        """
        # Literal zero so SELECT and GROUP BY render the identical expression
        is_deduction = CreditTransaction.amount < literal_column("0")
        rows = self.db.execute(
            select(
                CreditTransaction.pool,
                CreditTransaction.type,
                CreditTransaction.action_type,
                is_deduction,
                func.sum(CreditTransaction.amount),
                func.count(CreditTransaction.id),
            )
            .where(CreditTransaction.organization_id == organization_id)
            .group_by(
                CreditTransaction.pool,
                CreditTransaction.type,
                CreditTransaction.action_type,
                is_deduction,
            )
        ).all()

        stats = {
            "total_added": 0,
            "total_deducted": 0,
            "pools": {pool: {"added": 0, "deducted": 0} for pool in CREDIT_POOLS},
            "deductions_by_type": {},
            "deductions_by_action": {},
        }

        for pool, tx_type, action_type, is_deduction, total, count in rows:
            total = int(total or 0)
            pool_stats = stats["pools"].setdefault(pool, {"added": 0, "deducted": 0})
            if is_deduction:
                stats["total_deducted"] += -total
                pool_stats["deducted"] += -total
                stats["deductions_by_type"][tx_type] = stats["deductions_by_type"].get(tx_type, 0) + count
                if action_type:
                    stats["deductions_by_action"][action_type] = (
                        stats["deductions_by_action"].get(action_type, 0) + count
                    )
            else:
                stats["total_added"] += total
                pool_stats["added"] += total

        return stats

    def reconcile(self, organization_id: int) -> Dict[str, Dict]:
        """
        Compare each pool's stored balance with the sum of its ledger entries.

        Returns:
            Mapping pool -> {"balance", "ledger_sum", "matches"}
        """
        ledger_sums = dict(
            self.db.execute(
                select(CreditTransaction.pool, func.sum(CreditTransaction.amount))
                .where(CreditTransaction.organization_id == organization_id)
                .group_by(CreditTransaction.pool)
            ).all()
        )
        balances = self.get_balance(organization_id)

        report = {}
        for pool in sorted(set(balances) | set(ledger_sums)):
            balance = balances.get(pool, 0)
            ledger_sum = int(ledger_sums.get(pool) or 0)
            report[pool] = {
                "balance": balance,
                "ledger_sum": ledger_sum,
                "matches": balance == ledger_sum,
            }
        return report

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deduct(
        self,
        organization_id: int,
        pool: str,
        amount: int,
        transaction_type: str,
        description: str,
        related_id: Optional[str] = None,
        action_type: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """
        Deduct credits if, and only if, the pool covers the amount.

        Insufficient balance is an expected outcome and is returned as
        LedgerResult(ok=False, insufficient=InsufficientCredits(...)), leaving
        balance and ledger untouched. With commit=True the session is committed
        either way, so work the caller already added to it is never discarded.

        A successful deduction draws down unexpired lots of the pool,
        soonest-expiring first.

        Raises:
            ValueError: Invalid pool, amount or transaction type
            LedgerTransactionFailure: Database failure (session rolled back)
        """
        self._validate(pool, amount, transaction_type)
        context = self._context(organization_id, pool, amount, transaction_type, action_type, related_id)

        try:
            new_balance = self.db.execute(
                update(CreditBalance)
                .where(
                    CreditBalance.organization_id == organization_id,
                    CreditBalance.pool == pool,
                    CreditBalance.balance >= amount,
                )
                .values(balance=CreditBalance.balance - amount)
                .returning(CreditBalance.balance)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()

            if new_balance is None:
                available = self.get_pool_balance(organization_id, pool)
                if commit:
                    # Nothing was written by the UPDATE. End the transaction the
                    # same way a successful deduct does so pending caller work is kept
                    self.db.commit()
                logger.info(
                    f"Insufficient credits: org_id={organization_id}, pool={pool}, "
                    f"required={amount}, available={available}, action={action_type}"
                )
                return LedgerResult(
                    ok=False,
                    organization_id=organization_id,
                    pool=pool,
                    amount=amount,
                    balance=available,
                    insufficient=InsufficientCredits(pool=pool, required=amount, available=available),
                )

            entry = self._append_entry(
                organization_id, pool, -amount, transaction_type, description,
                new_balance, related_id, action_type,
            )
            if transaction_type not in LOT_EXEMPT_TYPES:
                self._draw_down_lots(organization_id, pool, amount)
            if commit:
                self.db.commit()
        except SQLAlchemyError as e:
            self._fail("deduct", context, e)

        logger.info(
            f"Credits deducted: org_id={organization_id}, pool={pool}, amount={amount}, "
            f"type={transaction_type}, balance={new_balance}"
        )
        return LedgerResult(
            ok=True,
            organization_id=organization_id,
            pool=pool,
            amount=amount,
            balance=int(new_balance),
            transaction_id=entry.id,
        )

    def add(
        self,
        organization_id: int,
        pool: str,
        amount: int,
        transaction_type: str,
        description: str,
        related_id: Optional[str] = None,
        commit: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> LedgerResult:
        """
        Grant credits to a pool. Always succeeds barring infrastructure failure.

        With expires_at the grant is also recorded as a CreditLot whose unspent
        remainder is removed once it expires.

        Raises:
            ValueError: Invalid pool, amount or transaction type
            LedgerTransactionFailure: Database failure (session rolled back)
        """
        self._validate(pool, amount, transaction_type)
        context = self._context(organization_id, pool, amount, transaction_type, None, related_id)

        try:
            self._ensure_balance_row(organization_id, pool)
            new_balance = self.db.execute(
                update(CreditBalance)
                .where(
                    CreditBalance.organization_id == organization_id,
                    CreditBalance.pool == pool,
                )
                .values(balance=CreditBalance.balance + amount)
                .returning(CreditBalance.balance)
                .execution_options(synchronize_session=False)
            ).scalar_one()

            entry = self._append_entry(
                organization_id, pool, amount, transaction_type, description,
                new_balance, related_id, None,
            )
            if expires_at is not None:
                self.db.add(CreditLot(
                    organization_id=organization_id,
                    pool=pool,
                    credit_amount=amount,
                    remaining_credits=amount,
                    source=transaction_type,
                    source_id=str(related_id) if related_id is not None else None,
                    expires_at=expires_at,
                ))
                self.db.flush()
            if commit:
                self.db.commit()
        except SQLAlchemyError as e:
            self._fail("add", context, e)

        logger.info(
            f"Credits added: org_id={organization_id}, pool={pool}, amount={amount}, "
            f"type={transaction_type}, balance={new_balance}"
        )
        return LedgerResult(
            ok=True,
            organization_id=organization_id,
            pool=pool,
            amount=amount,
            balance=int(new_balance),
            transaction_id=entry.id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_balance_row(self, organization_id: int, pool: str) -> None:
        """Create the (organization, pool) balance row if it does not exist yet."""
        dialect = self.db.get_bind().dialect.name
        values = {"organization_id": organization_id, "pool": pool, "balance": 0}

        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            exists = self.db.execute(
                select(CreditBalance.id).where(
                    CreditBalance.organization_id == organization_id,
                    CreditBalance.pool == pool,
                )
            ).first()
            if not exists:
                self.db.add(CreditBalance(**values))
                self.db.flush()
            return

        self.db.execute(
            insert(CreditBalance)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["organization_id", "pool"])
        )

    def _draw_down_lots(self, organization_id: int, pool: str, amount: int) -> None:
        # Serialized per pool by the row lock the deduction UPDATE already holds
        lots = self.db.execute(
            select(CreditLot)
            .where(
                CreditLot.organization_id == organization_id,
                CreditLot.pool == pool,
                CreditLot.is_expired.is_(False),
                CreditLot.remaining_credits > 0,
            )
            .order_by(CreditLot.expires_at, CreditLot.id)
            .execution_options(populate_existing=True)
        ).scalars().all()

        outstanding = amount
        for lot in lots:
            if outstanding <= 0:
                break
            taken = min(lot.remaining_credits, outstanding)
            lot.remaining_credits -= taken
            outstanding -= taken
        self.db.flush()

    def _append_entry(
        self,
        organization_id: int,
        pool: str,
        signed_amount: int,
        transaction_type: str,
        description: str,
        balance_after: int,
        related_id: Optional[str],
        action_type: Optional[str],
    ) -> CreditTransaction:
        entry = CreditTransaction(
            organization_id=organization_id,
            pool=pool,
            amount=signed_amount,
            type=transaction_type,
            action_type=action_type,
            related_id=str(related_id) if related_id is not None else None,
            description=description,
            balance_after=int(balance_after),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def _fail(self, operation: str, context: Dict, error: Exception):
        self.db.rollback()
        logger.error(f"Ledger {operation} failed, rolled back: {context}", exc_info=True)
        raise LedgerTransactionFailure(f"Ledger {operation} failed", context=context) from error

    @staticmethod
    def _context(organization_id, pool, amount, transaction_type, action_type, related_id) -> Dict:
        return {
            "organization_id": organization_id,
            "pool": pool,
            "amount": amount,
            "type": transaction_type,
            "action_type": action_type,
            "related_id": related_id,
        }

    @staticmethod
    def _validate_pool(pool: str) -> None:
        if not is_known_pool(pool):
            raise ValueError(f"Unknown credit pool: {pool}")

    def _validate(self, pool: str, amount: int, transaction_type: str) -> None:
        self._validate_pool(pool)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Amount must be a positive integer, got {amount!r}")
        if transaction_type not in TransactionType.ALL:
            raise ValueError(f"Unknown transaction type: {transaction_type}")
