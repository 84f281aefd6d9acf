"""
Alembic migration: initial order, payment and refund schema.

Creates orders and line items, per-product inventory, one payment per order,
refunds with the partial unique index that rejects duplicate active refunds,
the settlement job queue and the audit log.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

ORDER_STATUS = sa.Enum(
    'pending', 'paid', 'processing', 'shipped', 'delivered', 'cancelled', 'refunded',
    name='order_status',
)
PAYMENT_METHOD = sa.Enum('razorpay', 'stripe', 'cod', name='payment_method')
SHIPPING_METHOD = sa.Enum('standard', 'express', name='shipping_method')
PAYMENT_STATUS = sa.Enum('pending', 'completed', 'failed', name='payment_status')
REFUND_STATUS = sa.Enum(
    'requested', 'processing', 'succeeded', 'failed',
    name='refund_status',
)
JOB_STATUS = sa.Enum(
    'pending', 'processing', 'completed', 'failed',
    name='settlement_job_status',
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create all tables, indexes and constraints."""
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('buyer_id', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(320), nullable=True),
        sa.Column('status', ORDER_STATUS, nullable=False),
        sa.Column('payment_method', PAYMENT_METHOD, nullable=False),
        sa.Column('shipping_method', SHIPPING_METHOD, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('coupon_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('loyalty_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_cost', sa.Numeric(12, 2), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_rate_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('coupon_code', sa.String(64), nullable=True),
        sa.Column('loyalty_points_redeemed', sa.Integer(), nullable=False),
        sa.Column('gift_wrap', sa.Boolean(), nullable=False),
        sa.Column('shipping_address', JSON_TYPE, nullable=False),
        sa.Column('billing_address', JSON_TYPE, nullable=False),
        sa.Column('gateway_order_id', sa.String(255), nullable=True, unique=True),
        sa.Column('placed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            '(buyer_id IS NULL) <> (guest_email IS NULL)',
            name='ck_orders_single_owner',
        ),
        sa.CheckConstraint(
            'subtotal >= 0 AND coupon_discount >= 0 AND loyalty_discount >= 0 '
            'AND tax_amount >= 0 AND shipping_cost >= 0 AND total >= 0',
            name='ck_orders_amounts_non_negative',
        ),
        sa.CheckConstraint(
            'total = subtotal - coupon_discount - loyalty_discount '
            '+ tax_amount + shipping_cost',
            name='ck_orders_total_derivation',
        ),
        comment='Orders created by checkout',
    )
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
    op.create_index('ix_orders_guest_email', 'orders', ['guest_email'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_placed', 'orders', ['status', 'placed_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.Uuid(),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('qty > 0', name='ck_order_items_qty_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    op.create_table(
        'inventory',
        sa.Column('product_id', sa.String(64), primary_key=True),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('qty >= 0', name='ck_inventory_qty_non_negative'),
        sa.CheckConstraint(
            'low_stock_threshold >= 0',
            name='ck_inventory_threshold_non_negative',
        ),
        comment='Per-product available stock',
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.Uuid(),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('gateway', sa.String(32), nullable=False),
        sa.Column('gateway_order_id', sa.String(255), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('status', PAYMENT_STATUS, nullable=False),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        comment='One payment record per order',
    )
    op.create_index('ix_payments_gateway_order_id', 'payments', ['gateway_order_id'])
    op.create_index('ix_payments_gateway_payment_id', 'payments', ['gateway_payment_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(),
                  sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.Uuid(),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('initiated_by', sa.String(255), nullable=False),
        sa.Column('status', REFUND_STATUS, nullable=False),
        sa.Column('reason', sa.String(500), nullable=False),
        sa.Column('gateway_refund_id', sa.String(255), nullable=True),
        sa.Column('gateway_response', JSON_TYPE, nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_refunds_amount_positive'),
        comment='Refunds against completed payments',
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])
    op.create_index(
        'uq_refunds_payment_amount_active',
        'refunds',
        ['payment_id', 'amount'],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
        sqlite_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        'settlement_jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('kind', sa.String(64), nullable=False),
        sa.Column('refund_id', sa.Uuid(),
                  sa.ForeignKey('refunds.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', JOB_STATUS, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        comment='Refund settlement work queue',
    )
    op.create_index('ix_settlement_jobs_refund_id', 'settlement_jobs', ['refund_id'])
    op.create_index('ix_settlement_jobs_due', 'settlement_jobs', ['status', 'next_run_at'])
    op.create_index(
        'uq_settlement_jobs_open_refund',
        'settlement_jobs',
        ['refund_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('actor_id', sa.String(320), nullable=True),
        sa.Column('actor_type', sa.String(32), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('object_type', sa.String(32), nullable=False),
        sa.Column('object_id', sa.String(64), nullable=False),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(512), nullable=True),
        *_timestamps(),
        comment='Append-only audit trail',
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_object', 'audit_logs', ['object_type', 'object_id'])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table('audit_logs')
    op.drop_table('settlement_jobs')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('inventory')
    op.drop_table('order_items')
    op.drop_table('orders')

    bind = op.get_bind()
    for enum_type in (
        JOB_STATUS,
        REFUND_STATUS,
        PAYMENT_STATUS,
        SHIPPING_METHOD,
        PAYMENT_METHOD,
        ORDER_STATUS,
    ):
        enum_type.drop(bind, checkfirst=True)
