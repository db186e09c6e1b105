"""credit_lots_and_job_post_usage

Revision ID: 9a4d2e61f0c8
Revises: 5c1e0a7d9b32
Create Date: 2026-10-17 15:40:02.913870

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9a4d2e61f0c8'
down_revision: Union[str, None] = '5c1e0a7d9b32'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add expiring credit lots and per-period job post usage."""
    from sqlalchemy import inspect

    # Check what already exists (idempotent migration)
    bind = op.get_bind()
    inspector = inspect(bind)

    if 'credit_lots' not in inspector.get_table_names():
        op.create_table('credit_lots',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('pool', sa.String(length=32), nullable=False),
            sa.Column('credit_amount', sa.Integer(), nullable=False),
            sa.Column('remaining_credits', sa.Integer(), nullable=False),
            sa.Column('expired_credits', sa.Integer(), nullable=False),
            sa.Column('source', sa.String(length=32), nullable=False),
            sa.Column('source_id', sa.String(), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('is_expired', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.CheckConstraint('remaining_credits >= 0', name='ck_credit_lot_remaining_non_negative'),
            sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_credit_lot_org_pool', 'credit_lots', ['organization_id', 'pool'], unique=False)
        op.create_index(op.f('ix_credit_lots_expires_at'), 'credit_lots', ['expires_at'], unique=False)
        op.create_index(op.f('ix_credit_lots_id'), 'credit_lots', ['id'], unique=False)
        op.create_index(op.f('ix_credit_lots_organization_id'), 'credit_lots', ['organization_id'], unique=False)

    columns = [col['name'] for col in inspector.get_columns('organization_subscriptions')]

    # Add job_posts_used column if it doesn't exist
    if 'job_posts_used' not in columns:
        op.add_column('organization_subscriptions',
                      sa.Column('job_posts_used', sa.Integer(), nullable=False, server_default='0'))

    # Add provisional column if it doesn't exist
    if 'provisional' not in columns:
        op.add_column('organization_subscriptions',
                      sa.Column('provisional', sa.Boolean(), nullable=False, server_default=sa.false()))


def downgrade() -> None:
    """Remove credit lots and job post usage."""
    with op.batch_alter_table('organization_subscriptions') as batch_op:
        batch_op.drop_column('provisional')
        batch_op.drop_column('job_posts_used')
    op.drop_table('credit_lots')
