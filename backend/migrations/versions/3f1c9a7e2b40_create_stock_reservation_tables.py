"""create_stock_reservation_tables

Revision ID: 3f1c9a7e2b40
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stock_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.Column('stock_on_hand', sa.Integer(), server_default='0', nullable=False),
        sa.Column('stock_min', sa.Integer(), server_default='0', nullable=False),
        sa.Column('stock_max', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('stock_on_hand >= 0', name='ck_stock_items_non_negative'),
    )
    op.create_index('ix_stock_items_org_product', 'stock_items', ['organization_id', 'product_id'])
    op.create_index(
        'uq_stock_items_scope',
        'stock_items',
        ['organization_id', 'product_id', sa.text('coalesce(variant_id, 0)'), sa.text('coalesce(branch_id, 0)')],
        unique=True,
    )

    op.create_table(
        'stock_reservations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('origin_kind', sa.String(length=32), nullable=False),
        sa.Column('origin_id', sa.Integer(), nullable=True),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity > 0', name='ck_reservations_quantity_positive'),
    )
    op.create_index('ix_reservations_item_state_expires', 'stock_reservations', ['stock_item_id', 'state', 'expires_at'])
    op.create_index('ix_reservations_state_expires', 'stock_reservations', ['state', 'expires_at'])
    op.create_index('ix_reservations_org_origin', 'stock_reservations', ['organization_id', 'origin_kind', 'origin_id'])
    op.create_index('ix_reservations_org_created', 'stock_reservations', ['organization_id', 'created_at'])

    op.create_table(
        'stock_ledger_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.Column('movement_kind', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('resulting_stock', sa.Integer(), nullable=False),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_value', sa.Numeric(14, 2), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('reason', sa.String(length=500), nullable=True),
        sa.Column('reservation_id', sa.Integer(), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id']),
        sa.ForeignKeyConstraint(['reservation_id'], ['stock_reservations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity <> 0', name='ck_ledger_quantity_non_zero'),
        sa.CheckConstraint('resulting_stock >= 0', name='ck_ledger_resulting_non_negative'),
    )
    op.create_index('ix_ledger_stock_item_id', 'stock_ledger_entries', ['stock_item_id', 'id'])
    op.create_index('ix_ledger_org_created', 'stock_ledger_entries', ['organization_id', 'created_at'])
    op.create_index('ix_ledger_org_kind', 'stock_ledger_entries', ['organization_id', 'movement_kind'])
    op.create_index('ix_ledger_reservation_id', 'stock_ledger_entries', ['reservation_id'])

    # Ledger rows are append-only: reject UPDATE and DELETE at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION stock_ledger_entries_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'stock_ledger_entries is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_stock_ledger_entries_immutable
        BEFORE UPDATE OR DELETE ON stock_ledger_entries
        FOR EACH ROW EXECUTE FUNCTION stock_ledger_entries_immutable();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_stock_ledger_entries_immutable ON stock_ledger_entries")
    op.execute("DROP FUNCTION IF EXISTS stock_ledger_entries_immutable()")
    op.drop_index('ix_ledger_reservation_id', table_name='stock_ledger_entries')
    op.drop_index('ix_ledger_org_kind', table_name='stock_ledger_entries')
    op.drop_index('ix_ledger_org_created', table_name='stock_ledger_entries')
    op.drop_index('ix_ledger_stock_item_id', table_name='stock_ledger_entries')
    op.drop_table('stock_ledger_entries')
    op.drop_index('ix_reservations_org_created', table_name='stock_reservations')
    op.drop_index('ix_reservations_org_origin', table_name='stock_reservations')
    op.drop_index('ix_reservations_state_expires', table_name='stock_reservations')
    op.drop_index('ix_reservations_item_state_expires', table_name='stock_reservations')
    op.drop_table('stock_reservations')
    op.drop_index('uq_stock_items_scope', table_name='stock_items')
    op.drop_index('ix_stock_items_org_product', table_name='stock_items')
    op.drop_table('stock_items')
