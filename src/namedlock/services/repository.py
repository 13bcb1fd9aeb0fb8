from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from namedlock.models.inventory_history import InventoryHistory
from namedlock.models.lock_history import STATUS_ACQUIRED, STATUS_RELEASED, LockHistory
from namedlock.models.order import ORDER_STATUSES, Order
from namedlock.models.product import Product


class ProductNotFoundError(LookupError):
    """Raised when an order names a product that does not exist."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"product '{code}' does not exist")


class Repository:
    """Record operations run inside a caller-owned transaction.

    Nothing here commits. Reads that precede a write in the same critical
    section go through get_product_for_update so that the row stays locked
    until the enclosing transaction ends, whichever named lock the caller
    holds.
    """

    def __init__(self, session: Session):
        self.session = session
        # codes read with a row lock in this transaction
        self._locked_codes: set[str] = set()

    # Product helpers
    def get_product(self, code: str) -> Optional[Product]:
        return self.session.query(Product).filter_by(code=code).first()

    def get_product_for_update(self, code: str) -> Optional[Product]:
        product = self.session.query(Product).filter_by(code=code).with_for_update().first()
        if product is not None:
            self._locked_codes.add(code)
        return product

    def insert_product(self, code: str, quantity: int) -> Product:
        product = Product(code=code, quantity=quantity)
        self.session.add(product)
        self.session.flush()
        self._locked_codes.add(code)
        return product

    def update_product(self, product: Product) -> Product:
        if product.code not in self._locked_codes:
            raise ValueError(f"product '{product.code}' was not read for update in this transaction")
        self.session.add(product)
        self.session.flush()
        return product

    def add_inventory(self, code: str, delta: int, session_id: Optional[str] = None) -> Product:
        """Insert the product with ``delta`` or add ``delta`` to its quantity."""
        product = self.get_product_for_update(code)
        if product is None:
            product = self.insert_product(code, delta)
        else:
            product.quantity += delta
            self.update_product(product)
        self._log_inventory(code, delta, "add" if delta >= 0 else "subtract", session_id)
        return product

    def _log_inventory(self, code: str, quantity: int, action: str, session_id: Optional[str]) -> None:
        self.session.add(InventoryHistory(product_code=code, quantity=abs(quantity), action=action, session_id=session_id))
        self.session.flush()

    def list_inventory_history(self, code: str) -> list[InventoryHistory]:
        return self.session.query(InventoryHistory).filter_by(product_code=code).order_by(InventoryHistory.id).all()

    # Order helpers
    def list_orders_by_code(self, code: str) -> list[Order]:
        return self.session.query(Order).filter_by(product_code=code).order_by(Order.id).all()

    def insert_order(self, order: Order) -> Order:
        if order.status is None:
            order.status = "pending"
        if order.status not in ORDER_STATUSES:
            raise ValueError(f"unknown order status '{order.status}'")
        self.session.add(order)
        self.session.flush()
        return order

    def place_order(self, code: str, quantity: int, session_id: Optional[str] = None) -> Order:
        """Take ``quantity`` out of stock for a new order.

        The order is "completed" when the stock covers it and "cancelled"
        (stock untouched) otherwise.
        """
        product = self.get_product_for_update(code)
        if product is None:
            raise ProductNotFoundError(code)
        if product.quantity >= quantity:
            product.quantity -= quantity
            self.update_product(product)
            self._log_inventory(code, quantity, "subtract", session_id)
            status = "completed"
        else:
            status = "cancelled"
        return self.insert_order(Order(product_code=code, quantity=quantity, status=status, session_id=session_id))

    # Lock history helpers
    def record_lock_acquired(self, lock_name: str, session_id: str) -> LockHistory:
        entry = LockHistory(lock_name=lock_name, session_id=session_id, status=STATUS_ACQUIRED)
        self.session.add(entry)
        self.session.flush()
        return entry

    def record_lock_released(self, lock_name: str, session_id: str) -> LockHistory:
        """Close the latest open entry of this name and session, or append a released row."""
        entry = (
            self.session.query(LockHistory)
            .filter_by(lock_name=lock_name, session_id=session_id, status=STATUS_ACQUIRED)
            .order_by(LockHistory.id.desc())
            .first()
        )
        now = datetime.now()
        if entry is None:
            entry = LockHistory(lock_name=lock_name, session_id=session_id, status=STATUS_RELEASED, released_at=now)
            self.session.add(entry)
        else:
            entry.status = STATUS_RELEASED
            entry.released_at = now
        self.session.flush()
        return entry

    def list_lock_history(self, lock_name: str, limit: int = 50) -> list[LockHistory]:
        return (
            self.session.query(LockHistory)
            .filter_by(lock_name=lock_name)
            .order_by(LockHistory.id.desc())
            .limit(limit)
            .all()
        )
