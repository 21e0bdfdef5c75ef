"""create orders table

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the order ledger."""

    # ========================================================================
    # Create orders table
    # ========================================================================
    op.create_table(
        'orders',
        sa.Column('trade_number', sa.String(64), primary_key=True),
        sa.Column('product_id', sa.String(100), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('gateway_trade_seq', sa.String(100), nullable=True),
        sa.Column('period_trade_number', sa.String(100), nullable=True),
        sa.Column('sync_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'expired')",
            name='ck_order_status',
        ),
        sa.CheckConstraint(
            "sync_status IN ('pending', 'in_flight', 'synced', 'failed')",
            name='ck_order_sync_status',
        ),
        sa.CheckConstraint("kind IN ('one_time', 'subscription')", name='ck_order_kind'),
    )

    op.create_index('idx_orders_status', 'orders', ['status'])
    op.create_index('idx_orders_sync_status', 'orders', ['sync_status'])
    op.create_index('idx_orders_created_at', 'orders', ['created_at'])


def downgrade() -> None:
    """Drop the order ledger."""
    op.drop_index('idx_orders_created_at', table_name='orders')
    op.drop_index('idx_orders_sync_status', table_name='orders')
    op.drop_index('idx_orders_status', table_name='orders')
    op.drop_table('orders')
