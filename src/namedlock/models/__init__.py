from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .product import Product  # noqa: F401
from .order import Order  # noqa: F401
from .inventory_history import InventoryHistory  # noqa: F401
from .lock_history import LockHistory  # noqa: F401
