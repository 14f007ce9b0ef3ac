"""billing_ledger_tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-02-14 10:21:37.114208

Production-safe migration: Only creates tables that do not exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '5c1e7a9d2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    """
    Production-safe upgrade: Only creates new tables if they don't exist.
    """
    if not table_exists('users'):
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('full_name', sa.String(), nullable=False),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('wallet_lock_version', sa.Integer(), server_default='0', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    if not table_exists('payment_transactions'):
        op.create_table('payment_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.String(), nullable=True),
            sa.Column('purchase_type', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('discount_amount', sa.Integer(), nullable=False),
            sa.Column('wallet_deduction_amount', sa.Integer(), nullable=False),
            sa.Column('addons_total', sa.Integer(), nullable=False),
            sa.Column('final_amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('coupon_code', sa.String(), nullable=True),
            sa.Column('addons', sa.JSON(), nullable=True),
            sa.Column('order_id', sa.String(), nullable=True),
            sa.Column('payment_id', sa.String(), nullable=True),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('failure_reason', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_payment_transactions_id'), 'payment_transactions', ['id'], unique=False)
        op.create_index(op.f('ix_payment_transactions_user_id'), 'payment_transactions', ['user_id'], unique=False)
        op.create_index(op.f('ix_payment_transactions_status'), 'payment_transactions', ['status'], unique=False)
        op.create_index(op.f('ix_payment_transactions_order_id'), 'payment_transactions', ['order_id'], unique=True)
        op.create_index(op.f('ix_payment_transactions_subscription_id'), 'payment_transactions', ['subscription_id'], unique=False)
        op.create_index(op.f('ix_payment_transactions_created_at'), 'payment_transactions', ['created_at'], unique=False)

    if not table_exists('subscriptions'):
        op.create_table('subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=False),
            sa.Column('optimizations_used', sa.Integer(), nullable=False),
            sa.Column('optimizations_total', sa.Integer(), nullable=True),
            sa.Column('score_checks_used', sa.Integer(), nullable=False),
            sa.Column('score_checks_total', sa.Integer(), nullable=True),
            sa.Column('linkedin_messages_used', sa.Integer(), nullable=False),
            sa.Column('linkedin_messages_total', sa.Integer(), nullable=True),
            sa.Column('guided_builds_used', sa.Integer(), nullable=False),
            sa.Column('guided_builds_total', sa.Integer(), nullable=True),
            sa.Column('payment_transaction_id', sa.Integer(), nullable=True),
            sa.Column('coupon_used', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
        op.create_index(op.f('ix_subscriptions_payment_transaction_id'), 'subscriptions', ['payment_transaction_id'], unique=False)
        # At most one active subscription per user
        op.create_index(
            'uq_subscriptions_user_active', 'subscriptions', ['user_id'], unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    if not table_exists('user_addon_credits'):
        op.create_table('user_addon_credits',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('addon_id', sa.String(), nullable=False),
            sa.Column('entitlement_kind', sa.String(), nullable=False),
            sa.Column('quantity_purchased', sa.Integer(), nullable=False),
            sa.Column('quantity_remaining', sa.Integer(), nullable=False),
            sa.Column('payment_transaction_id', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.CheckConstraint('quantity_remaining >= 0', name='ck_addon_credit_remaining_non_negative'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_user_addon_credits_id'), 'user_addon_credits', ['id'], unique=False)
        op.create_index(op.f('ix_user_addon_credits_user_id'), 'user_addon_credits', ['user_id'], unique=False)
        op.create_index(op.f('ix_user_addon_credits_payment_transaction_id'), 'user_addon_credits', ['payment_transaction_id'], unique=False)
        op.create_index('idx_addon_credit_user_kind', 'user_addon_credits', ['user_id', 'entitlement_kind'], unique=False)

    if not table_exists('wallet_transactions'):
        op.create_table('wallet_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('type', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('transaction_ref', sa.String(), nullable=True),
            sa.Column('payment_transaction_id', sa.Integer(), nullable=True),
            sa.Column('details', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_wallet_transactions_id'), 'wallet_transactions', ['id'], unique=False)
        op.create_index(op.f('ix_wallet_transactions_user_id'), 'wallet_transactions', ['user_id'], unique=False)
        op.create_index(op.f('ix_wallet_transactions_payment_transaction_id'), 'wallet_transactions', ['payment_transaction_id'], unique=False)
        op.create_index('idx_wallet_user_status', 'wallet_transactions', ['user_id', 'status'], unique=False)

    if not table_exists('coupon_usage'):
        op.create_table('coupon_usage',
            sa.Column('code', sa.String(), nullable=False),
            sa.Column('uses', sa.Integer(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('code')
        )

    if not table_exists('pending_activations'):
        op.create_table('pending_activations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('payment_transaction_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('attempts', sa.Integer(), nullable=False),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('payment_transaction_id')
        )
        op.create_index(op.f('ix_pending_activations_id'), 'pending_activations', ['id'], unique=False)
        op.create_index(op.f('ix_pending_activations_status'), 'pending_activations', ['status'], unique=False)


def downgrade() -> None:
    """
    Drop the billing tables. Ledger history is lost; only for local use.
    """
    for table in [
        'pending_activations',
        'coupon_usage',
        'wallet_transactions',
        'user_addon_credits',
        'subscriptions',
        'payment_transactions',
        'users',
    ]:
        if table_exists(table):
            op.drop_table(table)
