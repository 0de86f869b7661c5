"""create_checkout_tables

Revision ID: 0f3a9c1d2b7e
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
import uuid
from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '0f3a9c1d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


order_status_enum = sa.Enum(
    'pending', 'confirmed', 'shipped', 'delivered', 'cancelled',
    name='order_status_enum',
)
order_payment_status_enum = sa.Enum(
    'unpaid', 'paid', 'failed', 'refunded', name='order_payment_status_enum'
)
inventory_movement_type_enum = sa.Enum(
    'reserve', 'release', 'fulfill', name='inventory_movement_type_enum'
)
payment_intent_status_enum = sa.Enum(
    'requires_payment_method', 'requires_confirmation', 'requires_action',
    'processing', 'succeeded', 'failed', 'canceled',
    name='payment_intent_status_enum',
)


def upgrade() -> None:
    """Upgrade schema - Create checkout tables and seed zones/rates."""

    # Shared users table is owned elsewhere; only create it on a fresh database
    bind = op.get_bind()
    if not sa.inspect(bind).has_table('users'):
        op.create_table(
            'users',
            sa.Column('id', UUID(as_uuid=True), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('first_name', sa.String(length=100), nullable=False),
            sa.Column('last_name', sa.String(length=100), nullable=False),
            sa.Column('phone', sa.String(length=50), nullable=True),
            sa.PrimaryKeyConstraint('id', name='pk_users'),
            sa.UniqueConstraint('email', name='uq_users_email'),
        )
    op.add_column(
        'users',
        sa.Column('gateway_customer_id', sa.String(length=100), nullable=True),
    )
    op.create_index('ix_users_gateway_customer_id', 'users', ['gateway_customer_id'])

    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('weight_grams', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
    )

    op.create_table(
        'product_variants',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('sku', sa.String(length=50), nullable=False),
        sa.Column('price_adjustment', sa.Numeric(10, 2), server_default='0', nullable=True),
        sa.Column('weight_grams', sa.Integer(), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), server_default='0', nullable=False),
        sa.Column('reserved_quantity', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            'reserved_quantity >= 0',
            name='ck_product_variants_non_negative_reserved',
        ),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'],
            name='fk_product_variants_product_id_products',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_product_variants'),
        sa.UniqueConstraint('sku', name='uq_product_variants_sku'),
    )

    op.create_table(
        'orders',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_number', sa.String(length=20), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', order_status_enum, server_default='pending', nullable=False),
        sa.Column(
            'payment_status', order_payment_status_enum,
            server_default='unpaid', nullable=False,
        ),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False),
        sa.Column('tax', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('shipping_cost', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('total', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_intent_id', sa.String(length=100), nullable=True),
        sa.Column('payment_failure_reason', sa.Text(), nullable=True),
        sa.Column('shipping_address', JSONB(), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('carrier_shipment_id', sa.String(length=50), nullable=True),
        sa.Column('estimated_delivery', sa.String(length=40), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "currency IN ('EUR', 'BRL', 'NAD')", name='ck_orders_supported_currency'
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'], name='fk_orders_user_id_users'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_user_id_status', 'orders', ['user_id', 'status'])
    op.create_index('ix_orders_payment_intent_id', 'orders', ['payment_intent_id'])
    op.create_index('ix_orders_tracking_number', 'orders', ['tracking_number'])
    op.create_index('ix_orders_carrier_shipment_id', 'orders', ['carrier_shipment_id'])

    op.create_table(
        'order_items',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('line_total', sa.Numeric(10, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_positive_quantity'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'],
            name='fk_order_items_order_id_orders', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_order_items_product_id_products'
        ),
        sa.ForeignKeyConstraint(
            ['variant_id'], ['product_variants.id'],
            name='fk_order_items_variant_id_product_variants',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'inventory_movements',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('type', inventory_movement_type_enum, nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reference_id', UUID(as_uuid=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            'quantity > 0', name='ck_inventory_movements_positive_movement'
        ),
        sa.ForeignKeyConstraint(
            ['variant_id'], ['product_variants.id'],
            name='fk_inventory_movements_variant_id_product_variants',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_inventory_movements'),
        sa.UniqueConstraint(
            'reference_id', 'variant_id', 'type',
            name='uq_inventory_movements_reference_variant_type',
        ),
    )
    op.create_index(
        'ix_inventory_movements_variant_id', 'inventory_movements', ['variant_id']
    )
    op.create_index(
        'ix_inventory_movements_reference_id', 'inventory_movements', ['reference_id']
    )

    op.create_table(
        'exchange_rates',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('from_currency', sa.String(length=3), nullable=False),
        sa.Column('to_currency', sa.String(length=3), nullable=False),
        sa.Column('rate', sa.Numeric(16, 6), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_exchange_rates'),
        sa.UniqueConstraint('from_currency', 'to_currency', name='uq_exchange_rates_pair'),
    )

    shipping_zones = op.create_table(
        'shipping_zones',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('countries', JSONB(), nullable=False),
        sa.Column('base_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('per_kg_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('free_shipping_threshold', sa.Numeric(10, 2), nullable=True),
        sa.Column('estimated_days_min', sa.Integer(), nullable=False),
        sa.Column('estimated_days_max', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_shipping_zones'),
    )

    op.create_table(
        'payment_intents',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('external_id', sa.String(length=100), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', payment_intent_status_enum, nullable=False),
        sa.Column('fulfillment_error', sa.Text(), nullable=True),
        sa.Column('fulfillment_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'],
            name='fk_payment_intents_order_id_orders', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'], name='fk_payment_intents_user_id_users'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_payment_intents'),
    )
    op.create_index(
        'ix_payment_intents_external_id', 'payment_intents', ['external_id'], unique=True
    )
    op.create_index('ix_payment_intents_order_id', 'payment_intents', ['order_id'])
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payment_intent_id', sa.String(length=100), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('event_id', name='pk_processed_webhook_events'),
    )
    op.create_index(
        'ix_processed_webhook_events_payment_intent_id',
        'processed_webhook_events',
        ['payment_intent_id'],
    )

    # Seed default zones and base exchange rates
    op.bulk_insert(
        shipping_zones,
        [
            {
                'id': uuid.uuid4(),
                'name': 'European Union',
                'countries': ['DE', 'FR', 'ES', 'IT', 'PT', 'NL', 'BE', 'AT'],
                'base_rate': 5.99,
                'per_kg_rate': 2.50,
                'free_shipping_threshold': 50.00,
                'estimated_days_min': 7,
                'estimated_days_max': 14,
                'is_active': True,
            },
            {
                'id': uuid.uuid4(),
                'name': 'Brazil',
                'countries': ['BR'],
                'base_rate': 12.99,
                'per_kg_rate': 5.00,
                'free_shipping_threshold': 100.00,
                'estimated_days_min': 14,
                'estimated_days_max': 28,
                'is_active': True,
            },
            {
                'id': uuid.uuid4(),
                'name': 'Namibia',
                'countries': ['NA'],
                'base_rate': 15.99,
                'per_kg_rate': 6.00,
                'free_shipping_threshold': 150.00,
                'estimated_days_min': 21,
                'estimated_days_max': 35,
                'is_active': True,
            },
        ],
    )

    exchange_rates = sa.table(
        'exchange_rates',
        sa.column('id', UUID(as_uuid=True)),
        sa.column('from_currency', sa.String),
        sa.column('to_currency', sa.String),
        sa.column('rate', sa.Numeric),
        sa.column('updated_at', sa.DateTime(timezone=True)),
    )
    now = datetime.now(timezone.utc)
    op.bulk_insert(
        exchange_rates,
        [
            {'id': uuid.uuid4(), 'from_currency': src, 'to_currency': dst,
             'rate': rate, 'updated_at': now}
            for src, dst, rate in (
                ('EUR', 'BRL', 5.50),
                ('EUR', 'NAD', 20.00),
                ('BRL', 'EUR', 0.18),
                ('NAD', 'EUR', 0.05),
            )
        ],
    )


def downgrade() -> None:
    """Downgrade schema - Drop checkout tables."""
    op.drop_index('ix_processed_webhook_events_payment_intent_id', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_index('ix_payment_intents_user_id', table_name='payment_intents')
    op.drop_index('ix_payment_intents_order_id', table_name='payment_intents')
    op.drop_index('ix_payment_intents_external_id', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_table('shipping_zones')
    op.drop_table('exchange_rates')
    op.drop_index('ix_inventory_movements_reference_id', table_name='inventory_movements')
    op.drop_index('ix_inventory_movements_variant_id', table_name='inventory_movements')
    op.drop_table('inventory_movements')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_carrier_shipment_id', table_name='orders')
    op.drop_index('ix_orders_tracking_number', table_name='orders')
    op.drop_index('ix_orders_payment_intent_id', table_name='orders')
    op.drop_index('ix_orders_user_id_status', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_index('ix_orders_order_number', table_name='orders')
    op.drop_table('orders')
    op.drop_table('product_variants')
    op.drop_table('products')
    op.drop_index('ix_users_gateway_customer_id', table_name='users')
    op.drop_column('users', 'gateway_customer_id')

    payment_intent_status_enum.drop(op.get_bind(), checkfirst=True)
    inventory_movement_type_enum.drop(op.get_bind(), checkfirst=True)
    order_payment_status_enum.drop(op.get_bind(), checkfirst=True)
    order_status_enum.drop(op.get_bind(), checkfirst=True)
