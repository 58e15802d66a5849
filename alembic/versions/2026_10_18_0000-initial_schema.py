"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TIERS = "('Gift', 'Professional', 'Business')"
OPERATION_TYPES = (
    "('image_generation', 'sora_image', 'product_card', 'chatgpt_message', "
    "'refund', 'purchase', 'monthly_reset')"
)


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('telegram_id', sa.String(255), nullable=False),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('tier', sa.String(20), nullable=False, server_default='Gift'),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tokens_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_renewal_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('channel_subscribed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_spent >= 0', name='ck_tokens_spent_non_negative'),
        sa.CheckConstraint(f"tier IN {TIERS}", name='ck_user_tier'),
        sa.UniqueConstraint('telegram_id', name='uq_users_telegram_id'),
    )

    # Indexes for users
    op.create_index('idx_users_tier', 'users', ['tier'])
    op.create_index(
        'idx_users_subscription_expires_at', 'users', ['subscription_expires_at'],
        postgresql_where=sa.text("tier <> 'Gift'"),
    )

    # ========================================================================
    # Create token_operations table (append-only ledger)
    # ========================================================================
    op.create_table(
        'token_operations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('operation_type', sa.String(30), nullable=False),
        sa.Column('tokens_amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            'balance_after = balance_before + tokens_amount',
            name='ck_token_operation_balance_consistency',
        ),
        sa.CheckConstraint(f"operation_type IN {OPERATION_TYPES}", name='ck_token_operation_type'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_token_operations_user', ondelete='RESTRICT'),
    )

    # Indexes for token_operations
    op.create_index('idx_token_operations_user_created', 'token_operations', ['user_id', 'created_at'])
    op.create_index('idx_token_operations_type', 'token_operations', ['operation_type'])
    op.create_index('idx_token_operations_created_at', 'token_operations', ['created_at'])

    # ========================================================================
    # Create payments table
    # ========================================================================
    op.create_table(
        'payments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False, server_default='yookassa'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('amount_rubles', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='RUB'),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('subscription_tier', sa.String(20), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_rubles >= 0', name='ck_payment_amount_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'succeeded', 'canceled', 'failed', 'refunded')",
            name='ck_payment_status',
        ),
        sa.UniqueConstraint('external_id', name='uq_payments_external_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_payments_user', ondelete='RESTRICT'),
    )

    # Indexes for payments
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('idx_payments_status', 'payments', ['status'])

    # ========================================================================
    # Create generations table
    # ========================================================================
    op.create_table(
        'generations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('operation_type', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('result_urls', JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dead_lettered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('retry_count >= 0', name='ck_generation_retry_count_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_generation_status',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_generations_user', ondelete='RESTRICT'),
    )

    # Indexes for generations
    op.create_index('idx_generations_user_status', 'generations', ['user_id', 'status'])

    # ========================================================================
    # Create subscription_tier_config table
    # ========================================================================
    tier_config = op.create_table(
        'subscription_tier_config',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('monthly_tokens', sa.Integer(), nullable=False),
        sa.Column('price_rubles', sa.Integer(), nullable=True),
        sa.Column('requests_per_minute', sa.Integer(), nullable=False),
        sa.Column('burst_per_second', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('monthly_tokens >= 0', name='ck_tier_monthly_tokens_non_negative'),
        sa.UniqueConstraint('tier', name='uq_subscription_tier_config_tier'),
    )

    op.bulk_insert(
        tier_config,
        [
            {'tier': 'Gift', 'monthly_tokens': 100, 'price_rubles': None,
             'requests_per_minute': 10, 'burst_per_second': 3, 'description': 'Free tier'},
            {'tier': 'Professional', 'monthly_tokens': 2000, 'price_rubles': 1990,
             'requests_per_minute': 50, 'burst_per_second': 10, 'description': 'Professional'},
            {'tier': 'Business', 'monthly_tokens': 10000, 'price_rubles': 3490,
             'requests_per_minute': 100, 'burst_per_second': 20, 'description': 'Business'},
        ],
    )

    # ========================================================================
    # Create subscription_history table
    # ========================================================================
    op.create_table(
        'subscription_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('price_rubles', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Foreign key
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'], name='fk_subscription_history_user', ondelete='RESTRICT'
        ),
    )

    # Indexes for subscription_history
    op.create_index('ix_subscription_history_user_id', 'subscription_history', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('subscription_history')
    op.drop_table('subscription_tier_config')
    op.drop_table('generations')
    op.drop_table('payments')
    op.drop_table('token_operations')
    op.drop_table('users')
