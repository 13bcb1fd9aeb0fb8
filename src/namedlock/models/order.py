from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from namedlock.models import Base

ORDER_STATUSES = ("pending", "processing", "completed", "cancelled")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    product_code = Column(String(50), ForeignKey("products.code"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    # one of ORDER_STATUSES, checked by Repository.insert_order
    status = Column(String(50), nullable=False, default="pending")
    # CONNECTION_ID() of the session that placed the order
    session_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_code": self.product_code,
            "quantity": self.quantity,
            "status": self.status,
            "session_id": self.session_id,
        }
