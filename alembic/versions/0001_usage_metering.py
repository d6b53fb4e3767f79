"""usage metering tables

Revision ID: 0001_usage_metering
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_usage_metering'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('clerk_id', sa.String(length=100), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('subscription_tier', sa.String(length=50), nullable=False, server_default='free'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='active'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subscribed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=100), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_clerk_id', 'users', ['clerk_id'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_subscription_tier', 'users', ['subscription_tier'])
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])
    op.create_index('ix_users_stripe_subscription_id', 'users', ['stripe_subscription_id'])

    op.create_table('usage_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('billing_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('billing_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('tier', sa.String(length=50), nullable=False),
        sa.Column('designs_allowance', sa.Integer(), nullable=False),
        sa.Column('overage_price_per_design', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('designs_used_in_period', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_settled_designs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_designs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_charge', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0'),
        sa.Column('soft_cap_reached', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('hard_cap_reached', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_generation_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'billing_period_start', name='uq_usage_records_user_period'),
        sa.CheckConstraint('designs_used_in_period >= 0', name='ck_usage_records_used_non_negative'),
        sa.CheckConstraint('billing_period_end > billing_period_start', name='ck_usage_records_period_order')
    )
    op.create_index('ix_usage_records_id', 'usage_records', ['id'])
    op.create_index('ix_usage_records_user_id', 'usage_records', ['user_id'])
    op.create_index('ix_usage_records_user_period_end', 'usage_records', ['user_id', 'billing_period_end'])

    op.create_table('design_generation_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('usage_record_id', sa.Uuid(), nullable=True),
        sa.Column('design_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['usage_record_id'], ['usage_records.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('design_count > 0', name='ck_design_generation_events_count_positive')
    )
    op.create_index('ix_design_generation_events_idempotency_key', 'design_generation_events', ['idempotency_key'], unique=True)
    op.create_index('ix_design_generation_events_user_id', 'design_generation_events', ['user_id'])

    op.create_table('pending_credits',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('source_usage_record_id', sa.Uuid(), nullable=False),
        sa.Column('designs', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['source_usage_record_id'], ['usage_records.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_usage_record_id'),
        sa.CheckConstraint('designs > 0', name='ck_pending_credits_designs_positive')
    )
    op.create_index('ix_pending_credits_user_id', 'pending_credits', ['user_id'])

    op.create_table('billing_ledger',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('usage_record_id', sa.Uuid(), nullable=True),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('tier', sa.String(length=50), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('designs_included', sa.Integer(), nullable=False),
        sa.Column('designs_used', sa.Integer(), nullable=False),
        sa.Column('overage_designs', sa.Integer(), nullable=False),
        sa.Column('overage_rate', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('subscription_fee', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0'),
        sa.Column('overage_fee', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('idempotency_key', sa.String(length=200), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['usage_record_id'], ['usage_records.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('ix_billing_ledger_user_id', 'billing_ledger', ['user_id'])
    op.create_index('ix_billing_ledger_usage_record_id', 'billing_ledger', ['usage_record_id'])


def downgrade() -> None:
    op.drop_table('billing_ledger')
    op.drop_table('pending_credits')
    op.drop_table('design_generation_events')
    op.drop_table('usage_records')
    op.drop_table('users')
