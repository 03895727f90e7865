"""
Alembic migration: Create couriers, orders and delivery runs.

Creates the deliverymen, orders and delivery_runs tables with their status
enum types. Orders embed their status history as JSONB and carry a version
column for compare-and-swap writes; delivery runs index their order ids with
GIN so active runs carrying an order can be found by containment.

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

ORDER_STATUS_VALUES = ('Pendente', 'Em Preparação', 'A caminho', 'Entregue', 'Cancelado')
DUTY_STATUS_VALUES = (
    'Fora de expediente',
    'Aguardando pedido',
    'Em rota de entrega',
    'Retornando a unidade',
)
DELIVERY_RUN_STATUS_VALUES = ('active', 'completed')


def _timestamps() -> list:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Create the delivery core schema.

    Enum types are created explicitly first so the tables can reference them
    without re-creating them.
    """
    order_status = postgresql.ENUM(*ORDER_STATUS_VALUES, name='order_status', create_type=False)
    duty_status = postgresql.ENUM(*DUTY_STATUS_VALUES, name='duty_status', create_type=False)
    run_status = postgresql.ENUM(
        *DELIVERY_RUN_STATUS_VALUES, name='delivery_run_status', create_type=False
    )

    bind = op.get_bind()
    order_status.create(bind, checkfirst=True)
    duty_status.create(bind, checkfirst=True)
    run_status.create(bind, checkfirst=True)

    op.create_table(
        'deliverymen',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Courier full name'),
        sa.Column(
            'pharmacy_unit_id',
            sa.String(length=64),
            nullable=False,
            comment='Pharmacy unit the courier works for',
        ),
        sa.Column(
            'status',
            duty_status,
            nullable=False,
            server_default='Fora de expediente',
            comment='Courier duty state',
        ),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            nullable=True,
            comment='Order currently being carried',
        ),
        sa.Column('license_plate', sa.String(length=16), nullable=True),
        sa.Column('chave_pix', sa.String(length=255), nullable=True, comment='PIX payout key'),
        *_timestamps(),
        comment='Couriers and their duty state',
    )
    op.create_index('ix_deliverymen_unit_status', 'deliverymen', ['pharmacy_unit_id', 'status'])

    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('number', sa.String(length=50), nullable=False, unique=True),
        sa.Column(
            'status',
            order_status,
            nullable=False,
            server_default='Pendente',
            comment='Current order status',
        ),
        sa.Column('last_status_update', sa.DateTime(timezone=True), nullable=True),
        sa.Column('price_number', sa.Numeric(10, 2), nullable=False, comment='Order total in BRL'),
        sa.Column(
            'items',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('pharmacy_unit_id', sa.String(length=64), nullable=False),
        sa.Column(
            'delivery_man_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('deliverymen.id', ondelete='SET NULL'),
            nullable=True,
            comment='Assigned courier',
        ),
        sa.Column('delivery_man_name', sa.String(length=255), nullable=True),
        sa.Column('license_plate', sa.String(length=16), nullable=True),
        sa.Column('location', postgresql.JSONB(), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('rating', sa.SmallInteger(), nullable=True),
        sa.Column('review_comment', sa.Text(), nullable=True),
        sa.Column('review_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'review_requested',
            sa.Boolean(),
            nullable=False,
            server_default=sa.text('false'),
        ),
        sa.Column(
            'status_history',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
            comment='Append-only status transition ledger',
        ),
        sa.Column(
            'version',
            sa.Integer(),
            nullable=False,
            server_default=sa.text('1'),
            comment='Optimistic concurrency counter',
        ),
        *_timestamps(),
        sa.CheckConstraint(
            'rating IS NULL OR (rating >= 1 AND rating <= 5)',
            name='ck_orders_rating_range',
        ),
        sa.CheckConstraint('price_number >= 0', name='ck_orders_price_non_negative'),
        sa.CheckConstraint(
            'rating IS NULL OR review_requested',
            name='ck_orders_rating_requires_review_resolution',
        ),
        comment='Pharmacy delivery orders with embedded status history',
    )
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_unit_status', 'orders', ['pharmacy_unit_id', 'status'])
    op.create_index('ix_orders_delivery_man_status', 'orders', ['delivery_man_id', 'status'])

    op.create_table(
        'delivery_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            'deliveryman_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('deliverymen.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('pharmacy_unit_id', sa.String(length=64), nullable=False),
        sa.Column('motorcycle_id', sa.String(length=64), nullable=True),
        sa.Column('status', run_status, nullable=False, server_default='active'),
        sa.Column(
            'order_ids',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            'checkpoints',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column('total_distance', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('total_distance >= 0', name='ck_delivery_runs_distance_non_negative'),
        sa.CheckConstraint(
            'end_time IS NULL OR end_time >= start_time',
            name='ck_delivery_runs_end_after_start',
        ),
        comment='Courier movement logs',
    )
    op.create_index(
        'ix_delivery_runs_deliveryman_status',
        'delivery_runs',
        ['deliveryman_id', 'status'],
    )
    op.create_index(
        'ix_delivery_runs_order_ids_gin',
        'delivery_runs',
        ['order_ids'],
        postgresql_using='gin',
    )


def downgrade() -> None:
    """Drop the delivery core schema."""
    op.drop_index('ix_delivery_runs_order_ids_gin', table_name='delivery_runs')
    op.drop_index('ix_delivery_runs_deliveryman_status', table_name='delivery_runs')
    op.drop_table('delivery_runs')

    op.drop_index('ix_orders_delivery_man_status', table_name='orders')
    op.drop_index('ix_orders_unit_status', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_deliverymen_unit_status', table_name='deliverymen')
    op.drop_table('deliverymen')

    bind = op.get_bind()
    postgresql.ENUM(name='delivery_run_status').drop(bind, checkfirst=True)
    postgresql.ENUM(name='duty_status').drop(bind, checkfirst=True)
    postgresql.ENUM(name='order_status').drop(bind, checkfirst=True)
