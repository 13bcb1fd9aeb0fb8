"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2025-03-02 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('code', sa.String(50), primary_key=True),
        sa.Column('quantity', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_code', sa.String(50), sa.ForeignKey('products.code'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_orders_product_code', 'orders', ['product_code'])


def downgrade() -> None:
    op.drop_index('ix_orders_product_code', 'orders')
    op.drop_table('orders')
    op.drop_table('products')
