"""Add lock_history table for observing named-lock cycles

Revision ID: 0003_add_lock_history
Revises: 0002_add_inventory_history
Create Date: 2025-03-09

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_add_lock_history'
down_revision = '0002_add_inventory_history'
branch_labels = None
depends_on = None


def upgrade():
    """Add lock_history table."""

    op.create_table(
        'lock_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('lock_name', sa.String(255), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='acquired'),
        sa.Column('acquired_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('released_at', sa.DateTime(), nullable=True)
    )

    # lookups are always by lock name
    op.create_index('ix_lock_history_lock_name', 'lock_history', ['lock_name'])


def downgrade():
    """Remove lock_history table."""

    op.drop_index('ix_lock_history_lock_name', 'lock_history')
    op.drop_table('lock_history')
