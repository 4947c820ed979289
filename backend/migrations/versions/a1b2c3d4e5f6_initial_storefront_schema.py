"""initial storefront schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the pricing and settlement schema:
- categories / products / product_categories: catalog as read by pricing
- sales / promo_codes: discount rules and customer codes
- order_contacts / orders / order_items: immutable order snapshots
- payment_requests: one payable per order, QPay invoice fields
- sales_transactions: append-only financial ledger
- sequences: per-day payment code counters
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_visible', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_is_visible', 'products', ['is_visible'])

    op.create_table(
        'product_categories',
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ),
        sa.PrimaryKeyConstraint('product_id', 'category_id')
    )

    # ============================================================================
    # Discounts
    # ============================================================================
    # Targets are (type, id) pairs; the CHECK keeps "all" id-less and the
    # others id-bearing.
    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('target_type', sa.String(length=16), nullable=False),
        sa.Column('target_id', sa.Integer(), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('badge_text', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(target_type = 'all' AND target_id IS NULL)"
            " OR (target_type IN ('product', 'category') AND target_id IS NOT NULL)",
            name='ck_sales_target'
        ),
        sa.CheckConstraint('discount_value >= 0', name='ck_sales_discount_value'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sales_target', 'sales', ['target_type', 'target_id'])
    op.create_index('ix_sales_window', 'sales', ['is_enabled', 'start_date', 'end_date'])

    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('applicable_type', sa.String(length=16), nullable=False),
        sa.Column('applicable_category_id', sa.Integer(), nullable=True),
        sa.Column('applicable_product_id', sa.Integer(), nullable=True),
        sa.Column('min_purchase_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('expiration_date', sa.DateTime(), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('times_used', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('times_used >= 0', name='ck_promo_codes_times_used'),
        sa.ForeignKeyConstraint(['applicable_category_id'], ['categories.id'], ),
        sa.ForeignKeyConstraint(['applicable_product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_promo_codes_code', 'promo_codes', ['code'], unique=True)

    # ============================================================================
    # Orders
    # ============================================================================
    op.create_table(
        'order_contacts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('address', sa.String(length=512), nullable=False),
        sa.Column('phone', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_contacts_phone', 'order_contacts', ['phone'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('contact_id', sa.Integer(), nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('sale_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('promo_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('promo_code_id', sa.Integer(), nullable=True),
        sa.Column('promo_code_used', sa.String(length=64), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('vat', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['contact_id'], ['order_contacts.id'], ),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_contact_id', 'orders', ['contact_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('original_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    # ============================================================================
    # Payments and ledger
    # ============================================================================
    op.create_table(
        'payment_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_type', sa.String(length=32), nullable=True),
        sa.Column('paid_date', sa.DateTime(), nullable=True),
        sa.Column('sender_invoice_no', sa.String(length=128), nullable=True),
        sa.Column('qpay_invoice_id', sa.String(length=128), nullable=True),
        sa.Column('qr_text', sa.Text(), nullable=True),
        sa.Column('qr_image', sa.Text(), nullable=True),
        sa.Column('qpay_short_url', sa.String(length=512), nullable=True),
        sa.Column('urls', sa.JSON(), nullable=True),
        sa.Column('payment_info', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('Pending', 'Paid', 'Failed', 'Cancelled')",
            name='ck_payment_requests_status'
        ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
        sa.UniqueConstraint('code')
    )
    op.create_index('ix_payment_requests_status', 'payment_requests', ['status'])
    op.create_index('ix_payment_requests_qpay_invoice_id', 'payment_requests', ['qpay_invoice_id'])

    # Append-only: no UPDATE or DELETE paths exist in application code
    op.create_table(
        'sales_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('payment_request_id', sa.String(length=36), nullable=True),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('external_reference', sa.String(length=128), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['payment_request_id'], ['payment_requests.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sales_transactions_type', 'sales_transactions', ['type'])
    op.create_index('ix_sales_transactions_order_id', 'sales_transactions', ['order_id'])
    op.create_index('ix_sales_transactions_user_id', 'sales_transactions', ['user_id'])
    op.create_index('ix_sales_transactions_payment_request_id', 'sales_transactions', ['payment_request_id'])
    op.create_index('ix_sales_transactions_payment_method', 'sales_transactions', ['payment_method'])
    op.create_index('ix_sales_transactions_status', 'sales_transactions', ['status'])
    op.create_index('ix_sales_transactions_transaction_date', 'sales_transactions', ['transaction_date'])
    op.create_index('ix_sales_txns_order_date', 'sales_transactions', ['order_id', 'transaction_date'])

    op.create_table(
        'sequences',
        sa.Column('day_key', sa.String(length=6), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('day_key')
    )


def downgrade():
    op.drop_table('sequences')
    op.drop_table('sales_transactions')
    op.drop_table('payment_requests')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('order_contacts')
    op.drop_table('promo_codes')
    op.drop_table('sales')
    op.drop_table('product_categories')
    op.drop_table('products')
    op.drop_table('categories')
