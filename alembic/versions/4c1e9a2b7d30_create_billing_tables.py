"""create_billing_tables

Revision ID: 4c1e9a2b7d30
Revises: 
Create Date: 2026-10-19 10:12:44.518203

Production-safe migration: Only creates tables that do not exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '4c1e9a2b7d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    # Create usage_tracking table
    if not table_exists('usage_tracking'):
        op.create_table('usage_tracking',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('feature', sa.String(length=64), nullable=False),
            sa.Column('month', sa.String(length=7), nullable=False),
            sa.Column('count', sa.Integer(), nullable=False),
            sa.Column('limit', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'feature', 'month', name='uq_usage_user_feature_month')
        )
        op.create_index('idx_usage_user_month', 'usage_tracking', ['user_id', 'month'], unique=False)
        op.create_index(op.f('ix_usage_tracking_id'), 'usage_tracking', ['id'], unique=False)
        op.create_index(op.f('ix_usage_tracking_user_id'), 'usage_tracking', ['user_id'], unique=False)

    # Create transactions table
    if not table_exists('transactions'):
        op.create_table('transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('tran_id', sa.String(length=20), nullable=False),
            sa.Column('amount', sa.Float(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('plan', sa.String(length=32), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=True),
            sa.Column('auto_renew', sa.Boolean(), nullable=False),
            sa.Column('next_billing_date', sa.DateTime(), nullable=True),
            sa.Column('superseded_by', sa.String(length=20), nullable=True),
            sa.Column('renewed_at', sa.DateTime(), nullable=True),
            sa.Column('payment_status_message', sa.String(), nullable=True),
            sa.Column('transaction_date', sa.DateTime(), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_transactions_user_status_created', 'transactions', ['user_id', 'status', 'created_at'], unique=False)
        op.create_index('idx_transactions_renewal', 'transactions', ['status', 'auto_renew', 'expires_at'], unique=False)
        op.create_index(op.f('ix_transactions_id'), 'transactions', ['id'], unique=False)
        op.create_index(op.f('ix_transactions_status'), 'transactions', ['status'], unique=False)
        op.create_index(op.f('ix_transactions_tran_id'), 'transactions', ['tran_id'], unique=True)
        op.create_index(op.f('ix_transactions_user_id'), 'transactions', ['user_id'], unique=False)

    # Create subscriptions table
    if not table_exists('subscriptions'):
        op.create_table('subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('current_plan', sa.String(length=32), nullable=False),
            sa.Column('current_tran_id', sa.String(length=20), nullable=True),
            sa.Column('expires_at', sa.DateTime(), nullable=True),
            sa.Column('auto_renew', sa.Boolean(), nullable=False),
            sa.Column('renewal_chain', sa.JSON(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=True)


def downgrade() -> None:
    op.drop_table('subscriptions')
    op.drop_table('transactions')
    op.drop_table('usage_tracking')
