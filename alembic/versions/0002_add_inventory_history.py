"""Add inventory_history table

Revision ID: 0002_add_inventory_history
Revises: 0001_initial
Create Date: 2025-03-05

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_add_inventory_history'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    """Add inventory_history table."""

    op.create_table(
        'inventory_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_code', sa.String(50), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_inventory_history_product_code', 'inventory_history', ['product_code'])


def downgrade():
    """Remove inventory_history table."""

    op.drop_index('ix_inventory_history_product_code', 'inventory_history')
    op.drop_table('inventory_history')
