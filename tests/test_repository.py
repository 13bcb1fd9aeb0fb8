import pytest
from sqlalchemy import event
from sqlalchemy.dialects import mysql

from namedlock.lib.database import InMemoryAdapter
from namedlock.models.lock_history import STATUS_ACQUIRED, STATUS_RELEASED
from namedlock.models.order import Order
from namedlock.models.product import Product
from namedlock.services.repository import ProductNotFoundError, Repository


def make_session():
    return InMemoryAdapter().session()


def test_add_inventory_inserts_then_updates():
    session = make_session()
    repo = Repository(session)

    created = repo.add_inventory("P001", 5, session_id="11")
    assert created.quantity == 5
    updated = repo.add_inventory("P001", 3, session_id="12")
    assert updated.quantity == 8
    session.commit()

    assert session.get(Product, "P001").quantity == 8
    history = repo.list_inventory_history("P001")
    assert [(h.quantity, h.action, h.session_id) for h in history] == [(5, "add", "11"), (3, "add", "12")]


def test_update_requires_read_for_update():
    session = make_session()
    session.add(Product(code="P002", quantity=1))
    session.commit()

    repo = Repository(session)
    product = repo.get_product("P002")
    product.quantity = 99
    with pytest.raises(ValueError):
        repo.update_product(product)

    locked = repo.get_product_for_update("P002")
    locked.quantity = 4
    repo.update_product(locked)
    session.commit()
    assert session.get(Product, "P002").quantity == 4


def test_read_for_update_absent_record():
    repo = Repository(make_session())
    assert repo.get_product_for_update("missing") is None


def test_place_order_completed_and_cancelled():
    session = make_session()
    repo = Repository(session)
    repo.add_inventory("P003", 5)

    done = repo.place_order("P003", 3, session_id="7")
    assert done.status == "completed"
    assert repo.get_product("P003").quantity == 2

    cancelled = repo.place_order("P003", 3, session_id="8")
    assert cancelled.status == "cancelled"
    assert repo.get_product("P003").quantity == 2

    orders = repo.list_orders_by_code("P003")
    assert [o.status for o in orders] == ["completed", "cancelled"]


def test_place_order_for_unknown_product():
    repo = Repository(make_session())
    with pytest.raises(ProductNotFoundError):
        repo.place_order("nope", 1)


def test_lock_history_release_closes_latest_open_entry():
    session = make_session()
    repo = Repository(session)

    first = repo.record_lock_acquired("L", "1")
    second = repo.record_lock_acquired("L", "1")
    other = repo.record_lock_acquired("L", "2")

    closed = repo.record_lock_released("L", "1")
    assert closed.id == second.id
    assert closed.status == STATUS_RELEASED
    assert closed.released_at is not None
    assert first.status == STATUS_ACQUIRED
    assert other.status == STATUS_ACQUIRED


def test_lock_history_release_without_open_entry_appends():
    session = make_session()
    repo = Repository(session)
    entry = repo.record_lock_released("L", "5")
    assert entry.id is not None
    assert entry.status == STATUS_RELEASED
    assert [e.id for e in repo.list_lock_history("L")] == [entry.id]


def test_read_for_update_takes_a_row_lock():
    session = make_session()
    repo = Repository(session)
    repo.insert_product("P001", 1)
    statements = []

    @event.listens_for(session, "do_orm_execute")
    def capture(state):
        statements.append(str(state.statement.compile(dialect=mysql.dialect())))

    repo.get_product_for_update("P001")
    repo.get_product("P001")

    assert "FOR UPDATE" in statements[0]
    assert "FOR UPDATE" not in statements[1]


def test_insert_order_checks_status():
    session = make_session()
    repo = Repository(session)
    repo.insert_product("P001", 1)

    pending = repo.insert_order(Order(product_code="P001", quantity=1))
    assert pending.status == "pending"
    with pytest.raises(ValueError, match="unknown order status"):
        repo.insert_order(Order(product_code="P001", quantity=1, status="shipped"))
