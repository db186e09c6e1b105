"""credit_ledger_and_billing

Revision ID: 5c1e0a7d9b32
Revises: 
Create Date: 2026-10-17 09:12:44.518203

Creates organizations, users, the credit ledger, the credit-pack payment
tables and the subscription tables. Tables that already exist are skipped.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '5c1e0a7d9b32'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('organizations'):
        op.create_table('organizations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_organizations_id'), 'organizations', ['id'], unique=False)

    if not table_exists('users'):
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('full_name', sa.String(), nullable=False),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('role', sa.String(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
        op.create_index(op.f('ix_users_organization_id'), 'users', ['organization_id'], unique=False)

    if not table_exists('credit_balances'):
        op.create_table('credit_balances',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('pool', sa.String(length=32), nullable=False),
            sa.Column('balance', sa.Integer(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('organization_id', 'pool', name='uq_credit_balance_org_pool')
        )
        op.create_index(op.f('ix_credit_balances_id'), 'credit_balances', ['id'], unique=False)
        op.create_index(op.f('ix_credit_balances_organization_id'), 'credit_balances', ['organization_id'], unique=False)

    if not table_exists('credit_transactions'):
        op.create_table('credit_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('pool', sa.String(length=32), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('type', sa.String(length=32), nullable=False),
            sa.Column('action_type', sa.String(length=64), nullable=True),
            sa.Column('related_id', sa.String(), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('balance_after', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_credit_tx_org_pool', 'credit_transactions', ['organization_id', 'pool'], unique=False)
        op.create_index(op.f('ix_credit_transactions_created_at'), 'credit_transactions', ['created_at'], unique=False)
        op.create_index(op.f('ix_credit_transactions_id'), 'credit_transactions', ['id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_organization_id'), 'credit_transactions', ['organization_id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_type'), 'credit_transactions', ['type'], unique=False)

    if not table_exists('credit_pricing'):
        op.create_table('credit_pricing',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('action_type', sa.String(length=64), nullable=False),
            sa.Column('cost', sa.Integer(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_credit_pricing_action_type'), 'credit_pricing', ['action_type'], unique=False)
        op.create_index(op.f('ix_credit_pricing_id'), 'credit_pricing', ['id'], unique=False)

    if not table_exists('credit_packages'):
        op.create_table('credit_packages',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('credit_amount', sa.Integer(), nullable=False),
            sa.Column('pool', sa.String(length=32), nullable=False),
            sa.Column('price', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('sort_order', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('name')
        )
        op.create_index(op.f('ix_credit_packages_id'), 'credit_packages', ['id'], unique=False)

    if not table_exists('payment_transactions'):
        op.create_table('payment_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('stripe_checkout_session_id', sa.String(), nullable=False),
            sa.Column('stripe_payment_intent_id', sa.String(), nullable=True),
            sa.Column('credit_package_id', sa.Integer(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('pool', sa.String(length=32), nullable=False),
            sa.Column('credits_purchased', sa.Integer(), nullable=False),
            sa.Column('credits_added', sa.Integer(), nullable=False),
            sa.Column('refunded_amount', sa.Integer(), nullable=False),
            sa.Column('refunded_credits', sa.Integer(), nullable=False),
            sa.Column('refund_reason', sa.Text(), nullable=True),
            sa.Column('stripe_refund_id', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['credit_package_id'], ['credit_packages.id'], ),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('stripe_checkout_session_id')
        )
        op.create_index(op.f('ix_payment_transactions_id'), 'payment_transactions', ['id'], unique=False)
        op.create_index(op.f('ix_payment_transactions_organization_id'), 'payment_transactions', ['organization_id'], unique=False)

    if not table_exists('payment_attempts'):
        op.create_table('payment_attempts',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('credit_package_id', sa.Integer(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('stripe_session_id', sa.String(), nullable=True),
            sa.Column('transaction_id', sa.Integer(), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['credit_package_id'], ['credit_packages.id'], ),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_payment_attempts_id'), 'payment_attempts', ['id'], unique=False)
        op.create_index(op.f('ix_payment_attempts_organization_id'), 'payment_attempts', ['organization_id'], unique=False)
        op.create_index(op.f('ix_payment_attempts_stripe_session_id'), 'payment_attempts', ['stripe_session_id'], unique=False)

    if not table_exists('subscription_plans'):
        op.create_table('subscription_plans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('monthly_price', sa.Integer(), nullable=False),
            sa.Column('yearly_price', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('monthly_cv_credits', sa.Integer(), nullable=False),
            sa.Column('monthly_interview_credits', sa.Integer(), nullable=False),
            sa.Column('job_posts_limit', sa.Integer(), nullable=True),
            sa.Column('support_level', sa.String(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('sort_order', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('name')
        )
        op.create_index(op.f('ix_subscription_plans_id'), 'subscription_plans', ['id'], unique=False)

    if not table_exists('organization_subscriptions'):
        op.create_table('organization_subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(), nullable=False),
            sa.Column('stripe_customer_id', sa.String(), nullable=True),
            sa.Column('billing_cycle', sa.String(length=16), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
            sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('stripe_subscription_id')
        )
        op.create_index(op.f('ix_organization_subscriptions_id'), 'organization_subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_organization_subscriptions_organization_id'), 'organization_subscriptions', ['organization_id'], unique=False)

    if not table_exists('subscription_invoices'):
        op.create_table('subscription_invoices',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('stripe_invoice_id', sa.String(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('cv_credits_allocated', sa.Integer(), nullable=False),
            sa.Column('interview_credits_allocated', sa.Integer(), nullable=False),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.ForeignKeyConstraint(['subscription_id'], ['organization_subscriptions.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('subscription_id', 'stripe_invoice_id', name='uq_subscription_invoice')
        )
        op.create_index(op.f('ix_subscription_invoices_id'), 'subscription_invoices', ['id'], unique=False)
        op.create_index(op.f('ix_subscription_invoices_organization_id'), 'subscription_invoices', ['organization_id'], unique=False)
        op.create_index(op.f('ix_subscription_invoices_subscription_id'), 'subscription_invoices', ['subscription_id'], unique=False)


def downgrade() -> None:
    for table_name in (
        'subscription_invoices',
        'organization_subscriptions',
        'subscription_plans',
        'payment_attempts',
        'payment_transactions',
        'credit_packages',
        'credit_pricing',
        'credit_transactions',
        'credit_balances',
        'users',
        'organizations',
    ):
        if table_exists(table_name):
            op.drop_table(table_name)
