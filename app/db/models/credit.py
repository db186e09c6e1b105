from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean, Text,
    Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.sql import func
from app.db.base import Base


class CreditBalance(Base):
    """
    Current balance of one credit pool for one organization.

    Only CreditLedger writes to this table. The CHECK constraint is the last
    line of defence against a negative balance.
    """
    __tablename__ = "credit_balances"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    pool = Column(String(32), nullable=False)  # "cv_processing", "interview"
    balance = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('organization_id', 'pool', name='uq_credit_balance_org_pool'),
        CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
    )


class CreditTransaction(Base):
    """
    Append-only ledger entry, one per balance mutation.

    amount is signed: negative for deductions, positive for grants.
    """
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    pool = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False)
    type = Column(String(32), nullable=False, index=True)  # processing | manual_adjustment | subscription | purchase | refund | expiration
    action_type = Column(String(64), nullable=True)  # "resume_processing", "interview_scheduling", ...
    related_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('idx_credit_tx_org_pool', 'organization_id', 'pool'),
    )


class CreditPricing(Base):
    """
    Credit cost per action type. At most one active row per action type.
    """
    __tablename__ = "credit_pricing"

    id = Column(Integer, primary_key=True, index=True)
    action_type = Column(String(64), nullable=False, index=True)
    cost = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class CreditLot(Base):
    """
    A grant of credits that expires.

    remaining_credits is drawn down by ordinary deductions, soonest-expiring
    lot first. Whatever is left when the lot expires is removed from the pool
    by an `expiration` ledger entry.
    """
    __tablename__ = "credit_lots"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    pool = Column(String(32), nullable=False)
    credit_amount = Column(Integer, nullable=False)
    remaining_credits = Column(Integer, nullable=False)
    expired_credits = Column(Integer, default=0, nullable=False)
    source = Column(String(32), nullable=False)  # ledger transaction type of the grant
    source_id = Column(String, nullable=True)  # e.g. Stripe invoice id
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_expired = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_credit_lot_org_pool', 'organization_id', 'pool'),
        CheckConstraint('remaining_credits >= 0', name='ck_credit_lot_remaining_non_negative'),
    )
