import logging
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from namedlock.lib.database import InMemoryAdapter, LockScope
from namedlock.lib.db_lock import (
    GuardedWorkError,
    InMemoryLockServer,
    InMemoryNamedLockSession,
    LockAcquisitionError,
    LockCapabilityError,
    LockNotAcquiredError,
    LockReleaseError,
    LockRolledBackError,
    LockSessionMismatchError,
)
from namedlock.models.lock_history import LockHistory
from namedlock.models.product import Product
from namedlock.services.coordinator import LockCoordinator
from namedlock.services.repository import Repository


def make_coordinator(record_history=True, sleep=lambda seconds: None, adapter=None):
    adapter = adapter or InMemoryAdapter()
    return LockCoordinator(adapter, record_history=record_history, sleep=sleep)


def test_acquire_is_reentrant_for_same_session():
    coord = make_coordinator()
    with coord.database.scope() as scope:
        first = coord.acquire(scope, "L", 0)
        second = coord.acquire(scope, "L", 0)
        assert first.acquired and second.acquired
        assert first.session_id == second.session_id == coord.current_session_id(scope)
        assert coord.get_owner(scope, "L") == first.session_id

        with coord.database.scope() as other:
            assert coord.acquire(other, "L", 0).acquired is False


def test_release_by_non_holder_is_not_an_error():
    coord = make_coordinator()
    with coord.database.scope() as holder, coord.database.scope() as other:
        coord.acquire(holder, "L", 0)
        result = coord.release(other, "L")
        assert result.released is False
        assert result.session_id == other.session_id()
        assert coord.release(other, "nobody-has-this").released is False
        assert coord.release(holder, "L").released is True


def test_status_reports_owner_and_current_session():
    coord = make_coordinator()
    with coord.database.scope() as holder, coord.database.scope() as viewer:
        coord.acquire(holder, "L", 0)
        status = coord.status(viewer, "L")
        assert status.is_locked
        assert status.is_free is False
        assert status.owner_session_id == holder.session_id()
        assert not status.is_owned_by_current_session
        assert coord.status(holder, "L").is_owned_by_current_session


def test_is_free_keeps_unknown_and_collapse_is_explicit():
    coord = make_coordinator()
    with coord.database.scope() as scope:
        assert coord.is_free(scope, "never-used") is None
        assert coord.lock_is_free(scope, "never-used") is True
        assert coord.lock_is_free(scope, "never-used", unknown_is_free=False) is False


def test_malformed_name_is_a_capability_fault():
    coord = make_coordinator()
    with coord.database.scope() as scope:
        with pytest.raises(LockAcquisitionError) as err:
            coord.acquire(scope, "", 0)
    assert err.value.acquired is False

    with pytest.raises(LockAcquisitionError):
        coord.acquire_hold_release("x" * 100, -1, 0)


def test_acquire_and_release_write_history():
    coord = make_coordinator()
    with coord.database.scope() as scope:
        sid = coord.acquire(scope, "H", 0).session_id
        coord.release(scope, "H")
    entries = Repository(coord.database.Session()).list_lock_history("H")
    assert len(entries) == 1
    assert entries[0].session_id == sid
    assert entries[0].status == "released"


def test_history_failure_does_not_change_result(caplog):
    adapter = InMemoryAdapter()
    LockHistory.__table__.drop(adapter.engine)
    coord = make_coordinator(adapter=adapter)
    with caplog.at_level(logging.WARNING), coord.database.scope() as scope:
        assert coord.acquire(scope, "L", 0).acquired
        assert coord.release(scope, "L").released
    assert "failed to save lock history" in caplog.text


def test_hold_release_uses_one_session_throughout(caplog):
    observed = {}

    def sleep(seconds):
        observed["hold"] = seconds
        observed["owner"] = coord.database.lock_backend.owner("test_lock")

    coord = make_coordinator(sleep=sleep)
    with caplog.at_level(logging.INFO, logger="namedlock.services.coordinator"):
        session_id = coord.acquire_hold_release("test_lock", -1, 2)

    assert observed == {"hold": 2, "owner": session_id}
    for stage in ("before lock", "after lock", "before release"):
        assert f"{stage} session ID: {session_id}" in caplog.text
    assert coord.database.lock_backend.owner("test_lock") is None


def test_hold_release_contended_with_no_wait():
    coord = make_coordinator()
    with coord.database.scope() as holder:
        coord.acquire(holder, "busy", 0)
        with pytest.raises(LockNotAcquiredError) as err:
            coord.acquire_hold_release("busy", 0, 1)
    assert err.value.acquired is False
    assert not isinstance(err.value, LockRolledBackError)
    assert coord.database.lock_backend.owner("busy") == holder.session_id()


class ShiftingIdSession(InMemoryNamedLockSession):
    calls = 0

    def session_id(self):
        self.calls += 1
        return self._sid if self.calls == 1 else self._sid + "-moved"


class ShiftingIdServer(InMemoryLockServer):
    def bind(self, session):
        return ShiftingIdSession(self, self.open_session().session_id())


def test_session_change_while_holding_rolls_back():
    adapter = InMemoryAdapter()
    adapter.lock_backend = ShiftingIdServer()
    coord = make_coordinator(adapter=adapter, record_history=False)
    with pytest.raises(LockSessionMismatchError) as err:
        coord.acquire_hold_release("L", -1, 0)
    assert err.value.acquired is True
    assert adapter.lock_backend.owner("L") is None


def test_at_most_one_holder_under_contention():
    guard = threading.Lock()
    state = {"active": 0, "max": 0}

    def sleep(seconds):
        with guard:
            state["active"] += 1
            state["max"] = max(state["max"], state["active"])
        time.sleep(seconds)
        with guard:
            state["active"] -= 1

    coord = make_coordinator(record_history=False, sleep=sleep)
    session_ids = []
    errors = []

    def worker():
        try:
            session_ids.append(coord.acquire_hold_release("shared", -1, 0.05))
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert state["max"] == 1
    assert len(session_ids) == 5


def test_second_acquirer_blocks_until_release():
    coord = make_coordinator(record_history=False)
    acquired = threading.Event()
    results = []

    with coord.database.scope() as first:
        assert coord.acquire(first, "L", -1).acquired

        def second():
            with coord.database.scope() as scope:
                results.append(coord.acquire(scope, "L", -1))
                acquired.set()
                coord.release(scope, "L")

        t = threading.Thread(target=second)
        t.start()
        assert not acquired.wait(0.2)
        assert coord.release(first, "L").released
        assert acquired.wait(5)
        t.join(5)

    assert results[0].acquired
    assert results[0].session_id != first.session_id()


def test_process_inventory_inserts_then_updates():
    coord = make_coordinator()
    first = coord.process_inventory("P001", 5, -1)
    assert first.result == {"product_code": "P001", "quantity": 5}
    second = coord.process_inventory("P001", 3, -1)
    assert second.result["quantity"] == 8

    session = coord.database.Session()
    assert session.get(Product, "P001").quantity == 8
    history = Repository(session).list_lock_history("P001")
    assert [e.status for e in history] == ["released", "released"]


def test_failed_guarded_work_rolls_back_and_frees_lock():
    coord = make_coordinator()

    def work(repo, session_id):
        repo.insert_product("P9", 10)
        raise RuntimeError("boom")

    with pytest.raises(GuardedWorkError) as err:
        coord.acquire_guarded_release("P9", work, -1)
    assert err.value.acquired is True
    assert isinstance(err.value.original_error, RuntimeError)

    with coord.database.scope() as fresh:
        assert coord.lock_is_free(fresh, "P9") is True
        assert fresh.session.get(Product, "P9") is None


class NoReleaseServer(InMemoryLockServer):
    def release(self, sid, lock_name):
        return False


def test_release_failure_rolls_back_guarded_writes():
    adapter = InMemoryAdapter()
    adapter.lock_backend = NoReleaseServer()
    coord = make_coordinator(adapter=adapter)

    with pytest.raises(LockReleaseError) as err:
        coord.process_inventory("P5", 2, -1)
    assert err.value.acquired is True
    assert adapter.lock_backend.owner("P5") is None
    assert adapter.Session().get(Product, "P5") is None


def test_order_for_missing_product_is_guarded_work_error():
    coord = make_coordinator()
    with pytest.raises(GuardedWorkError):
        coord.place_order("ghost", 1, -1)

    coord.process_inventory("P7", 4, -1)
    outcome = coord.place_order("P7", 3, -1)
    assert outcome.result["status"] == "completed"
    assert outcome.result["session_id"] == outcome.session_id


class BrokenReleaseServer(InMemoryLockServer):
    def release(self, sid, lock_name):
        raise LockCapabilityError("connection lost", lock_name=lock_name)


def test_release_fault_in_composite_is_release_error():
    adapter = InMemoryAdapter()
    adapter.lock_backend = BrokenReleaseServer()
    coord = make_coordinator(adapter=adapter)

    with pytest.raises(LockReleaseError) as err:
        coord.process_inventory("P6", 2, -1)
    assert err.value.acquired is True
    assert isinstance(err.value.original_error, LockCapabilityError)
    assert adapter.lock_backend.owner("P6") is None
    assert adapter.Session().get(Product, "P6") is None


def test_commit_failure_rolls_back_and_drops_lock(monkeypatch):
    coord = make_coordinator()

    def failing_commit(self):
        raise OperationalError("COMMIT", {}, Exception("server has gone away"))

    monkeypatch.setattr(LockScope, "commit", failing_commit)
    with pytest.raises(LockRolledBackError) as err:
        coord.process_inventory("P8", 3, -1)
    monkeypatch.undo()

    assert type(err.value) is LockRolledBackError
    assert err.value.acquired is True
    assert isinstance(err.value.original_error, OperationalError)
    assert coord.database.lock_backend.owner("P8") is None
    assert coord.database.Session().get(Product, "P8") is None
    # the discarded connection is not handed out again
    with coord.database.scope() as fresh:
        assert fresh.session_id() != err.value.session_id
