"""add period charges table

Revision ID: 2026_10_20_0001
Revises: 2026_10_19_0000
Create Date: 2026-10-20 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_20_0001'
down_revision: Union[str, None] = '2026_10_19_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Record each recurring subscription charge once."""

    # ========================================================================
    # Create period_charges table
    # ========================================================================
    op.create_table(
        'period_charges',
        sa.Column('trade_number', sa.String(64), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=True),
        sa.Column('gateway_trade_seq', sa.String(100), nullable=True),
        sa.Column('period_trade_number', sa.String(100), nullable=True),
        sa.Column('paid_at', sa.String(32), nullable=True),
        sa.Column('sync_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.PrimaryKeyConstraint('trade_number', 'sequence'),
        sa.ForeignKeyConstraint(['trade_number'], ['orders.trade_number'], ondelete='CASCADE'),
        sa.CheckConstraint('sequence >= 1', name='ck_period_charge_sequence_positive'),
        sa.CheckConstraint(
            "status IN ('completed', 'failed', 'expired')",
            name='ck_period_charge_status',
        ),
        sa.CheckConstraint(
            "sync_status IN ('pending', 'in_flight', 'synced', 'failed')",
            name='ck_period_charge_sync_status',
        ),
    )

    op.create_index('idx_period_charges_sync_status', 'period_charges', ['sync_status'])


def downgrade() -> None:
    """Drop the recurring charge ledger."""
    op.drop_index('idx_period_charges_sync_status', table_name='period_charges')
    op.drop_table('period_charges')
