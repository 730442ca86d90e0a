"""initial storefront schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, **kwargs):
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='customer'),
        _timestamp('created_at', server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False, unique=True),
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('image_url', sa.String(length=255), nullable=True),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sold_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rating', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('weight_kg', sa.Float(), nullable=False, server_default='0.5'),
        _timestamp('created_at', server_default=sa.func.now()),
        _timestamp('updated_at', server_default=sa.func.now()),
        sa.CheckConstraint('price >= 0', name='ck_products_price_nonneg'),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_products_stock_nonneg'),
    )
    op.create_index('ix_products_category_name', 'products', ['category_id', 'name'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount', sa.Numeric(12, 2), nullable=True),
        sa.Column('min_purchase', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('per_user_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('starts_at', nullable=True),
        _timestamp('expires_at', nullable=True),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp('created_at', server_default=sa.func.now()),
        sa.CheckConstraint('value >= 0', name='ck_coupons_value_nonneg'),
        sa.CheckConstraint('used_count >= 0', name='ck_coupons_used_nonneg'),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('shipping_cost', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id', ondelete='SET NULL'), nullable=True),
        sa.Column('tracking_number', sa.String(length=64), nullable=True),
        sa.Column('shipping_courier', sa.String(length=64), nullable=True),
        sa.Column('shipping_service', sa.String(length=64), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        _timestamp('created_at', server_default=sa.func.now()),
        _timestamp('paid_at', nullable=True),
        _timestamp('processing_at', nullable=True),
        _timestamp('shipped_at', nullable=True),
        _timestamp('delivered_at', nullable=True),
        _timestamp('completed_at', nullable=True),
        _timestamp('cancelled_at', nullable=True),
        _timestamp('refunded_at', nullable=True),
        _timestamp('updated_at', server_default=sa.func.now()),
        sa.CheckConstraint('total >= 0', name='ck_orders_total_nonneg'),
        sa.CheckConstraint('discount >= 0', name='ck_orders_discount_nonneg'),
    )
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_title', sa.String(length=255), nullable=False),
        sa.Column('product_image', sa.String(length=255), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_orderitem_quantity_pos'),
        sa.CheckConstraint('price >= 0', name='ck_orderitem_price_nonneg'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('method', sa.String(length=20), nullable=False),
        sa.Column('gateway', sa.String(length=20), nullable=False, server_default='stripe'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('gateway_checkout_id', sa.String(length=255), nullable=True),
        sa.Column('gateway_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=True),
        _timestamp('expires_at', nullable=True),
        _timestamp('paid_at', nullable=True),
        _timestamp('refunded_at', nullable=True),
        _timestamp('created_at', server_default=sa.func.now()),
        _timestamp('updated_at', server_default=sa.func.now()),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_nonneg'),
    )
    op.create_index('ix_payments_gateway_checkout_id', 'payments', ['gateway_checkout_id'])
    op.create_index('ix_payments_gateway_transaction_id', 'payments', ['gateway_transaction_id'])

    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        _timestamp('used_at', server_default=sa.func.now()),
        sa.UniqueConstraint('coupon_id', 'order_id', name='uq_coupon_usage_order'),
    )
    op.create_index('ix_coupon_usages_coupon_user', 'coupon_usages', ['coupon_id', 'user_id'])

    op.create_table(
        'shipping_providers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('services', sa.JSON(), nullable=False),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp('created_at', server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'])


def downgrade():
    op.drop_table('notifications')
    op.drop_table('shipping_providers')
    op.drop_table('coupon_usages')
    op.drop_table('payments')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('products')
    op.drop_table('categories')
    op.drop_table('users')
