"""billing schema: users, subscription events, promo codes

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('subscription_status', sa.Text(), server_default='free', nullable=False),
        sa.Column('subscription_type', sa.Text(), server_default='free', nullable=False),
        sa.Column('subscription_source', sa.Text(), nullable=True),
        sa.Column('current_plan', sa.Text(), server_default='free', nullable=False),
        sa.Column('is_trial', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('subscription_activation_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_subscription_id', sa.Text(), nullable=True),
        sa.Column('stripe_price_id', sa.Text(), nullable=True),
        sa.Column('subscription_amount_cents', sa.Integer(), nullable=True),
        sa.Column('subscription_currency', sa.Text(), nullable=True),
        sa.Column('last_event_id', sa.Text(), nullable=True),
        sa.Column('last_event_created', sa.BigInteger(), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("subscription_status IN ('free', 'premium')", name='ck_users_subscription_status'),
        sa.CheckConstraint("subscription_type IN ('free', 'paid', 'promo')", name='ck_users_subscription_type'),
        sa.CheckConstraint("current_plan IN ('free', 'monthly', 'annual')", name='ck_users_current_plan'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'], unique=True)
    op.create_index('ix_users_stripe_subscription_id', 'users', ['stripe_subscription_id'])

    op.create_table(
        'subscription_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('stripe_event_id', sa.Text(), nullable=True),
        sa.Column('event_data', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    )
    op.create_index('ix_subscription_events_created_at', 'subscription_events', ['created_at'])
    op.create_index('ix_subscription_events_user_id', 'subscription_events', ['user_id'])
    op.create_index('ix_subscription_events_event_type', 'subscription_events', ['event_type'])
    op.create_index('ix_subscription_events_stripe_event_id', 'subscription_events', ['stripe_event_id'])

    op.create_table(
        'promo_codes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('code', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('discount_percent', sa.Integer(), nullable=True),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=True),
        sa.Column('free_months', sa.Integer(), nullable=True),
        sa.Column('trial_days', sa.Integer(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_uses_per_user', sa.Integer(), server_default='1', nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('stripe_promotion_code_id', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint(
            "type IN ('free_subscription', 'discount_percent', 'discount_amount', 'free_trial')",
            name='ck_promo_codes_type',
        ),
        sa.CheckConstraint(
            "discount_percent IS NULL OR (discount_percent >= 0 AND discount_percent <= 100)",
            name='ck_promo_codes_discount_percent',
        ),
        sa.CheckConstraint('current_uses >= 0', name='ck_promo_codes_current_uses'),
        sa.UniqueConstraint('code', name='uq_promo_codes_code'),
    )
    op.create_index('ix_promo_codes_active', 'promo_codes', ['active'])

    op.create_table(
        'promo_code_uses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('promo_code_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('fingerprint_hash', sa.Text(), nullable=True),
        sa.Column('stripe_subscription_id', sa.Text(), nullable=True),
        sa.Column('order_amount_cents', sa.Integer(), nullable=True),
        sa.Column('discount_applied_cents', sa.Integer(), nullable=True),
        sa.Column('ip_hash', sa.Text(), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.UniqueConstraint('promo_code_id', 'stripe_subscription_id', name='uq_promo_code_uses_code_subscription'),
    )
    op.create_index('ix_promo_code_uses_promo_code_id', 'promo_code_uses', ['promo_code_id'])
    op.create_index('ix_promo_code_uses_user_id', 'promo_code_uses', ['user_id'])
    op.create_index('ix_promo_code_uses_fingerprint_hash', 'promo_code_uses', ['fingerprint_hash'])


def downgrade() -> None:
    op.drop_index('ix_promo_code_uses_fingerprint_hash', table_name='promo_code_uses')
    op.drop_index('ix_promo_code_uses_user_id', table_name='promo_code_uses')
    op.drop_index('ix_promo_code_uses_promo_code_id', table_name='promo_code_uses')
    op.drop_table('promo_code_uses')
    op.drop_index('ix_promo_codes_active', table_name='promo_codes')
    op.drop_table('promo_codes')
    op.drop_index('ix_subscription_events_stripe_event_id', table_name='subscription_events')
    op.drop_index('ix_subscription_events_event_type', table_name='subscription_events')
    op.drop_index('ix_subscription_events_user_id', table_name='subscription_events')
    op.drop_index('ix_subscription_events_created_at', table_name='subscription_events')
    op.drop_table('subscription_events')
    op.drop_index('ix_users_stripe_subscription_id', table_name='users')
    op.drop_index('ix_users_stripe_customer_id', table_name='users')
    op.drop_table('users')
