from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from namedlock.models import Base


class Product(Base):
    """Inventory row guarded by the named lock of the same code."""
    __tablename__ = "products"

    code = Column(String(50), primary_key=True)
    quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)

    def to_dict(self) -> dict:
        return {"product_code": self.code, "quantity": self.quantity}
