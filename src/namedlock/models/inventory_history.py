from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from namedlock.models import Base


class InventoryHistory(Base):
    """Append-only audit of product quantity changes made under a lock."""
    __tablename__ = "inventory_history"

    id = Column(Integer, primary_key=True)
    product_code = Column(String(50), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    action = Column(String(50), nullable=False)  # 'add' or 'subtract'
    session_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
