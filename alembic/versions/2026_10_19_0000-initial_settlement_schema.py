"""initial settlement schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create settlement schema."""

    # ========================================================================
    # Create contents table (catalogue; settlement only reads it)
    # ========================================================================
    op.create_table(
        'contents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('creator_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price >= 0', name='ck_content_price_non_negative'),
    )

    op.create_index('idx_contents_creator_id', 'contents', ['creator_id'])

    # ========================================================================
    # Create content_purchases table
    # ========================================================================
    op.create_table(
        'content_purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('content_id', UUID(as_uuid=True), nullable=False),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('seller_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('creator_revenue', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('card_provider', sa.String(20), nullable=True),
        sa.Column('payment_id', sa.String(40), nullable=True),
        sa.Column('order_number', sa.String(32), nullable=True),
        sa.Column('payment_key', sa.String(200), nullable=True),
        sa.Column('buyer_note', sa.String(200), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('payment_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('seller_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('platform_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount >= 0', name='ck_purchase_amount_non_negative'),
        sa.CheckConstraint('creator_revenue >= 0 AND platform_fee >= 0', name='ck_purchase_split_non_negative'),
        sa.CheckConstraint(
            'creator_revenue + platform_fee = 0 OR creator_revenue + platform_fee = amount',
            name='ck_purchase_split_matches_amount',
        ),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'pending_confirm', 'completed', 'rejected', "
            "'cancelled', 'refunded', 'failed')",
            name='ck_purchase_status_valid',
        ),
        sa.CheckConstraint(
            "payment_method IN ('card', 'transfer', 'free')",
            name='ck_purchase_payment_method_valid',
        ),
        sa.UniqueConstraint('payment_id', name='uq_purchase_payment_id'),
        sa.UniqueConstraint('order_number', name='uq_purchase_order_number'),
        sa.ForeignKeyConstraint(['content_id'], ['contents.id'], name='fk_purchases_content', ondelete='RESTRICT'),
    )

    # At most one in-flight and one completed purchase per (content, buyer)
    op.create_index(
        'uq_purchase_one_pending_per_buyer',
        'content_purchases',
        ['content_id', 'buyer_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending_payment', 'pending_confirm')"),
    )
    op.create_index(
        'uq_purchase_one_completed_per_buyer',
        'content_purchases',
        ['content_id', 'buyer_id'],
        unique=True,
        postgresql_where=sa.text("status = 'completed'"),
    )
    op.create_index('idx_purchases_buyer_content', 'content_purchases', ['buyer_id', 'content_id'])
    op.create_index('idx_purchases_seller_status', 'content_purchases', ['seller_id', 'status'])

    # ========================================================================
    # Create creator_balances table
    # ========================================================================
    op.create_table(
        'creator_balances',
        sa.Column('creator_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('available_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('pending_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_earned', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_paid_out', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('available_balance >= 0', name='ck_available_balance_non_negative'),
        sa.CheckConstraint('pending_balance >= 0', name='ck_pending_balance_non_negative'),
        sa.CheckConstraint('total_earned >= 0', name='ck_total_earned_non_negative'),
        sa.CheckConstraint('total_paid_out >= 0', name='ck_total_paid_out_non_negative'),
        sa.CheckConstraint(
            'available_balance + pending_balance + total_paid_out = total_earned',
            name='ck_balance_accounting_identity',
        ),
    )

    # ========================================================================
    # Create payout_requests table (payout service; settlement only reads it)
    # ========================================================================
    op.create_table(
        'payout_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('creator_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('amount > 0', name='ck_payout_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'rejected')",
            name='ck_payout_status_valid',
        ),
    )

    op.create_index('idx_payout_requests_creator', 'payout_requests', ['creator_id', 'requested_at'])

    # ========================================================================
    # Create notifications table
    # ========================================================================
    op.create_table(
        'notifications',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('link', sa.String(500), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("type IN ('purchase', 'payout', 'system')", name='ck_notification_type_valid'),
    )

    op.create_index('idx_notifications_user_created', 'notifications', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('notifications')
    op.drop_table('payout_requests')
    op.drop_table('creator_balances')
    op.drop_table('content_purchases')
    op.drop_table('contents')
