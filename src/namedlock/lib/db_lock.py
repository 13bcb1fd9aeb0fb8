"""Database session named locks.

This module wraps the server-side user-level lock functions (GET_LOCK,
RELEASE_LOCK, IS_FREE_LOCK, IS_USED_LOCK) behind a small session object.
Locks belong to the database connection that took them, so a
NamedLockSession must stay bound to one connection for as long as the caller
expects to hold a lock.

The module also carries the lock error taxonomy used by the coordinator and
the HTTP layer.
"""
from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# MySQL rejects user-level lock names longer than this
MAX_LOCK_NAME_LENGTH = 64

LOCK_BACKEND_ENV = "NAMEDLOCK_LOCK_BACKEND"


class LockError(Exception):
    """Base class for named-lock failures."""

    # True when the lock had been obtained before the failure
    acquired = False

    def __init__(
        self,
        message: str,
        lock_name: Optional[str] = None,
        session_id: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.message = message
        self.lock_name = lock_name
        self.session_id = session_id
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.message}: {self.original_error}"
        return self.message


class LockCapabilityError(LockError):
    """Raised when a lock function call itself fails (connection lost, bad name)."""


class LockAcquisitionError(LockCapabilityError):
    """Raised when the acquire call errors out, as opposed to timing out."""


class LockNotAcquiredError(LockError):
    """Raised by composite operations when the lock stayed with another session."""


class LockRolledBackError(LockError):
    """The lock was acquired but the enclosing transaction had to be rolled back."""

    acquired = True


class LockReleaseError(LockRolledBackError):
    """Release failed after a successful acquire."""


class GuardedWorkError(LockRolledBackError):
    """The work run while holding the lock raised."""


class LockSessionMismatchError(LockRolledBackError):
    """The connection id changed while the lock was held."""


class NamedLockSession(ABC):
    """Named-lock functions evaluated on one database session.

    Return values follow the server functions: acquire/release report
    success as a bool, is_free_lock is tri-state (True free, False in use,
    None when the server has nothing to say about the name).
    """

    @abstractmethod
    def session_id(self) -> str:
        """Identifier of the underlying connection."""

    @abstractmethod
    def get_lock(self, lock_name: str, timeout: int) -> bool:
        """Try to take the lock, waiting up to ``timeout`` seconds (negative waits forever)."""

    @abstractmethod
    def release_lock(self, lock_name: str) -> bool:
        """Give the lock back. False if this session does not hold it."""

    @abstractmethod
    def is_free_lock(self, lock_name: str) -> Optional[bool]:
        """True if nobody holds the lock, False if it is in use, None if the server does not know the name."""

    @abstractmethod
    def is_used_lock(self, lock_name: str) -> Optional[str]:
        """Session id of the current holder, or None if nobody holds it."""

    def discard(self) -> None:
        """Tear the session down so that every lock it holds is dropped."""

    def close(self) -> None:
        """Hand the connection back to its pool. Locks it holds stay with it."""


class MySQLNamedLockSession(NamedLockSession):
    """Named locks on the connection bound to a SQLAlchemy session.

    While a transaction is open the ORM session keeps a single connection,
    so every call made here between begin and commit/rollback runs on the
    same server thread.
    """

    def __init__(self, session: Session):
        self.session = session

    def _scalar(self, sql: str, params: Optional[dict] = None, lock_name: Optional[str] = None):
        try:
            return self.session.execute(text(sql), params or {}).scalar()
        except SQLAlchemyError as exc:
            raise LockCapabilityError(
                f"'{sql}' failed", lock_name=lock_name, original_error=exc
            ) from exc

    def session_id(self) -> str:
        return str(self._scalar("SELECT CONNECTION_ID()"))

    def get_lock(self, lock_name: str, timeout: int) -> bool:
        result = self._scalar(
            "SELECT GET_LOCK(:lock_name, :timeout)",
            {"lock_name": lock_name, "timeout": timeout},
            lock_name=lock_name,
        )
        if result is None:
            # NULL means the server hit an error (thread killed, out of memory)
            raise LockCapabilityError(f"GET_LOCK returned NULL for '{lock_name}'", lock_name=lock_name)
        return int(result) == 1

    def release_lock(self, lock_name: str) -> bool:
        # 0: held by another thread, NULL: no such lock
        result = self._scalar("SELECT RELEASE_LOCK(:lock_name)", {"lock_name": lock_name}, lock_name=lock_name)
        return result is not None and int(result) == 1

    def is_free_lock(self, lock_name: str) -> Optional[bool]:
        result = self._scalar("SELECT IS_FREE_LOCK(:lock_name)", {"lock_name": lock_name}, lock_name=lock_name)
        if result is None:
            return None
        return int(result) == 1

    def is_used_lock(self, lock_name: str) -> Optional[str]:
        result = self._scalar("SELECT IS_USED_LOCK(:lock_name)", {"lock_name": lock_name}, lock_name=lock_name)
        return str(result) if result is not None else None

    def discard(self) -> None:
        # Invalidating closes the DBAPI connection instead of returning it to
        # the pool; the server then drops all user-level locks of that thread.
        try:
            self.session.connection().invalidate()
        except SQLAlchemyError as exc:
            logger.warning("failed to invalidate connection: %s", exc)


class MySQLLockBackend:
    """Binds MySQLNamedLockSession objects to ORM sessions."""

    name = "mysql"

    def bind(self, session: Session) -> MySQLNamedLockSession:
        return MySQLNamedLockSession(session)

    def close(self) -> None:
        # engine.dispose() closes the connections and with them their locks
        pass


class InMemoryLockServer:
    """In-process stand-in for the server's user-level lock table.

    Used by tests and by SQLite setups, which have no GET_LOCK. Semantics
    follow MySQL 5.7+: acquisition is reentrant and counted, only the owning
    session can release, and locks vanish when their session is discarded.

    Session ids behave like pooled connections: bind() hands out an idle id
    (the most recently returned one first) or a new one, close() returns it,
    and a discarded id is never handed out again. A lock taken through one
    scope therefore stays reachable by the next scope that gets the same
    connection, as with a real connection pool.

    Usage:
        server = InMemoryLockServer()
        locks = server.open_session()
        locks.get_lock("L", 0)
    """

    name = "memory"

    # names remembered for is_free() once nobody holds them
    max_seen_names = 10000

    def __init__(self):
        self._cond = threading.Condition()
        # lock name -> [owner session id, acquisition count]
        self._owners: dict[str, list] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._idle: list[str] = []
        self._ids = itertools.count(1)

    def open_session(self) -> "InMemoryNamedLockSession":
        """A session on a brand-new connection."""
        with self._cond:
            sid = str(next(self._ids))
        return InMemoryNamedLockSession(self, sid)

    def bind(self, session: Session) -> "InMemoryNamedLockSession":
        with self._cond:
            if not self._idle:
                sid = str(next(self._ids))
            else:
                sid = self._idle.pop()
        return InMemoryNamedLockSession(self, sid)

    def checkin(self, sid: str) -> None:
        with self._cond:
            if sid not in self._idle:
                self._idle.append(sid)

    @staticmethod
    def _check_name(lock_name: str) -> None:
        if not lock_name or len(lock_name) > MAX_LOCK_NAME_LENGTH:
            raise LockCapabilityError(f"Incorrect user-level lock name '{lock_name}'", lock_name=lock_name)

    def _remember(self, lock_name: str) -> None:
        self._seen[lock_name] = None
        self._seen.move_to_end(lock_name)
        while len(self._seen) > self.max_seen_names:
            self._seen.popitem(last=False)

    def acquire(self, sid: str, lock_name: str, timeout: int) -> bool:
        self._check_name(lock_name)
        deadline = None if timeout < 0 else time.monotonic() + timeout
        with self._cond:
            self._remember(lock_name)
            while True:
                entry = self._owners.get(lock_name)
                if entry is None:
                    self._owners[lock_name] = [sid, 1]
                    return True
                if entry[0] == sid:
                    entry[1] += 1
                    return True
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)

    def release(self, sid: str, lock_name: str) -> bool:
        self._check_name(lock_name)
        with self._cond:
            entry = self._owners.get(lock_name)
            if entry is None or entry[0] != sid:
                return False
            entry[1] -= 1
            if entry[1] == 0:
                del self._owners[lock_name]
                self._cond.notify_all()
            return True

    def is_free(self, lock_name: str) -> Optional[bool]:
        self._check_name(lock_name)
        with self._cond:
            if lock_name in self._owners:
                return False
            if lock_name not in self._seen:
                return None
            return True

    def owner(self, lock_name: str) -> Optional[str]:
        self._check_name(lock_name)
        with self._cond:
            entry = self._owners.get(lock_name)
            return entry[0] if entry else None

    def release_all(self, sid: str) -> int:
        """Drop every lock held by ``sid``. Returns the number of names freed."""
        with self._cond:
            names = [name for name, entry in self._owners.items() if entry[0] == sid]
            for name in names:
                del self._owners[name]
            if names:
                self._cond.notify_all()
        return len(names)

    def close(self) -> None:
        with self._cond:
            self._owners.clear()
            self._idle.clear()
            self._cond.notify_all()


class InMemoryNamedLockSession(NamedLockSession):
    def __init__(self, server: InMemoryLockServer, sid: str):
        self.server = server
        self._sid = sid
        self._discarded = False

    def session_id(self) -> str:
        return self._sid

    def get_lock(self, lock_name: str, timeout: int) -> bool:
        return self.server.acquire(self._sid, lock_name, timeout)

    def release_lock(self, lock_name: str) -> bool:
        return self.server.release(self._sid, lock_name)

    def is_free_lock(self, lock_name: str) -> Optional[bool]:
        return self.server.is_free(lock_name)

    def is_used_lock(self, lock_name: str) -> Optional[str]:
        return self.server.owner(lock_name)

    def discard(self) -> None:
        self._discarded = True
        self.server.release_all(self._sid)

    def close(self) -> None:
        # a discarded connection does not go back to the pool
        if not self._discarded:
            self.server.checkin(self._sid)


def create_lock_backend(backend_name: Optional[str] = None, database_url: Optional[str] = None):
    """Pick a lock backend from an explicit name, the environment or the database URL.

    "auto" (the default) uses server locks for MySQL URLs and the in-memory
    emulation for anything else.
    """
    requested = (backend_name or os.environ.get(LOCK_BACKEND_ENV, "auto")).strip().lower()

    if requested == "auto":
        if database_url and database_url.startswith("mysql"):
            return MySQLLockBackend()
        return InMemoryLockServer()

    if requested == "mysql":
        return MySQLLockBackend()

    if requested == "memory":
        return InMemoryLockServer()

    logger.warning("Unknown lock backend '%s'; falling back to auto selection", requested)
    return create_lock_backend("auto", database_url=database_url)
