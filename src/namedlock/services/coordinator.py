"""Named-lock coordination on top of database session locks.

The coordinator never keeps lock state of its own: who holds what is always
asked from the database. Composite operations bind begin, acquire, the held
section, release and commit to a single session so that the lock is taken
and given back by the same connection.

Per invocation the composite operations move through

    Idle -> AcquireRequested -> Acquired -> [GuardedWork ->] ReleaseRequested
         -> Released -> Committed

or end in NotAcquired. Any failure after Acquired ends in RolledBack, and the
connection is discarded so that the lock cannot outlive the failed call.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from namedlock.lib.database import Database, LockScope
from namedlock.lib.db_lock import (
    GuardedWorkError,
    LockAcquisitionError,
    LockCapabilityError,
    LockNotAcquiredError,
    LockReleaseError,
    LockRolledBackError,
    LockSessionMismatchError,
)
from namedlock.models.lock_history import STATUS_ACQUIRED, STATUS_RELEASED
from namedlock.services.repository import Repository

logger = logging.getLogger(__name__)

GuardedWork = Callable[[Repository, str], Any]


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    session_id: str


@dataclass(frozen=True)
class ReleaseResult:
    released: bool
    session_id: str


@dataclass(frozen=True)
class LockStatus:
    """Ownership snapshot of one lock name as seen from one session."""

    lock_name: str
    is_free: Optional[bool]
    owner_session_id: Optional[str]
    current_session_id: str

    @property
    def is_locked(self) -> bool:
        return self.owner_session_id is not None

    @property
    def is_owned_by_current_session(self) -> bool:
        return self.owner_session_id is not None and self.owner_session_id == self.current_session_id


@dataclass(frozen=True)
class GuardedOutcome:
    session_id: str
    result: Any = None


class LockCoordinator:
    """Acquire/release rules for named locks.

    Args:
        database: Database providing sessions and the lock backend
        record_history: Write lock_history rows (best effort)
        sleep: Function used for the hold period, replaceable in tests
    """

    def __init__(self, database: Database, record_history: bool = True, sleep: Callable[[float], None] = time.sleep):
        self.database = database
        self.record_history = record_history
        self.sleep = sleep

    # Single calls on a caller-provided scope
    def acquire(self, scope: LockScope, lock_name: str, timeout: int) -> AcquireResult:
        """Take ``lock_name`` on the scope's session.

        A negative timeout waits forever, 0 tries once. Losing to another
        session is reported as ``acquired=False``; only a failing lock call
        raises LockAcquisitionError.
        """
        try:
            session_id = scope.session_id()
            acquired = scope.locks.get_lock(lock_name, timeout)
        except LockCapabilityError as exc:
            raise LockAcquisitionError(
                f"failed to acquire lock '{lock_name}'", lock_name=lock_name, original_error=exc
            ) from exc

        if acquired:
            self._record(STATUS_ACQUIRED, lock_name, session_id)
        return AcquireResult(acquired=acquired, session_id=session_id)

    def release(self, scope: LockScope, lock_name: str) -> ReleaseResult:
        """Give ``lock_name`` back. Non-holders get ``released=False``."""
        try:
            session_id = scope.session_id()
            released = scope.locks.release_lock(lock_name)
        except LockCapabilityError as exc:
            raise LockCapabilityError(
                f"failed to release lock '{lock_name}'", lock_name=lock_name, original_error=exc
            ) from exc

        if released:
            self._record(STATUS_RELEASED, lock_name, session_id)
        return ReleaseResult(released=released, session_id=session_id)

    def is_free(self, scope: LockScope, lock_name: str) -> Optional[bool]:
        """Tri-state: True free, False held, None when the store does not know the name."""
        return scope.locks.is_free_lock(lock_name)

    def lock_is_free(self, scope: LockScope, lock_name: str, unknown_is_free: bool = True) -> bool:
        state = self.is_free(scope, lock_name)
        if state is None:
            return unknown_is_free
        return state

    def get_owner(self, scope: LockScope, lock_name: str) -> Optional[str]:
        return scope.locks.is_used_lock(lock_name)

    def current_session_id(self, scope: LockScope) -> str:
        return scope.session_id()

    def status(self, scope: LockScope, lock_name: str) -> LockStatus:
        return LockStatus(
            lock_name=lock_name,
            is_free=self.is_free(scope, lock_name),
            owner_session_id=self.get_owner(scope, lock_name),
            current_session_id=self.current_session_id(scope),
        )

    # Composite operations, each on its own transaction
    def acquire_hold_release(self, lock_name: str, timeout: int, hold_duration: float) -> str:
        """Acquire, hold for ``hold_duration`` seconds, release and commit.

        Returns the session id, which is checked to be the same before the
        acquire, after it and before the release.
        """
        outcome = self._run_locked(lock_name, timeout, lambda repo, sid: self.sleep(max(0, hold_duration)))
        return outcome.session_id

    def acquire_guarded_release(self, lock_name: str, work: GuardedWork, timeout: int) -> GuardedOutcome:
        """Run ``work(repository, session_id)`` while holding ``lock_name``.

        The guarded writes, the release and the commit succeed together, or
        the transaction is rolled back and nothing is kept.
        """
        return self._run_locked(lock_name, timeout, work)

    def process_inventory(self, product_code: str, quantity: int, timeout: int) -> GuardedOutcome:
        """Add ``quantity`` to the product named by ``product_code`` under its lock."""
        return self.acquire_guarded_release(
            product_code,
            lambda repo, sid: repo.add_inventory(product_code, quantity, session_id=sid).to_dict(),
            timeout,
        )

    def place_order(self, product_code: str, quantity: int, timeout: int) -> GuardedOutcome:
        """Create an order for ``product_code`` under its lock."""
        return self.acquire_guarded_release(
            product_code,
            lambda repo, sid: repo.place_order(product_code, quantity, session_id=sid).to_dict(),
            timeout,
        )

    def _run_locked(self, lock_name: str, timeout: int, work: GuardedWork) -> GuardedOutcome:
        request_id = uuid.uuid4().hex[:8]
        scope = self.database.begin()
        session_id = None
        acquired = False
        try:
            try:
                session_id = scope.session_id()
                logger.info("[%s] before lock session ID: %s", request_id, session_id)
                acquired = scope.locks.get_lock(lock_name, timeout)
            except LockCapabilityError as exc:
                raise LockAcquisitionError(
                    f"failed to acquire lock '{lock_name}'",
                    lock_name=lock_name,
                    session_id=session_id,
                    original_error=exc,
                ) from exc
            if not acquired:
                raise LockNotAcquiredError(
                    f"lock '{lock_name}' was not acquired within {timeout}s",
                    lock_name=lock_name,
                    session_id=session_id,
                )

            self._check_session(scope, lock_name, session_id, request_id, "after lock")
            try:
                result = work(Repository(scope.session), session_id)
            except Exception as exc:
                raise GuardedWorkError(
                    f"work under lock '{lock_name}' failed",
                    lock_name=lock_name,
                    session_id=session_id,
                    original_error=exc,
                ) from exc

            self._check_session(scope, lock_name, session_id, request_id, "before release")
            try:
                released = scope.locks.release_lock(lock_name)
            except LockCapabilityError as exc:
                raise LockReleaseError(
                    f"failed to release lock '{lock_name}'",
                    lock_name=lock_name,
                    session_id=session_id,
                    original_error=exc,
                ) from exc
            if not released:
                raise LockReleaseError(
                    f"lock '{lock_name}' was not held by session {session_id} at release",
                    lock_name=lock_name,
                    session_id=session_id,
                )

            try:
                scope.commit()
            except SQLAlchemyError as exc:
                raise LockRolledBackError(
                    "failed to commit transaction",
                    lock_name=lock_name,
                    session_id=session_id,
                    original_error=exc,
                ) from exc
            return GuardedOutcome(session_id=session_id, result=result)
        except Exception:
            self._rollback(scope, discard=acquired)
            raise
        finally:
            scope.close()
            if acquired:
                # after a rollback the discarded connection took the lock with it
                self._record(STATUS_ACQUIRED, lock_name, session_id)
                self._record(STATUS_RELEASED, lock_name, session_id)

    def _check_session(self, scope: LockScope, lock_name: str, expected: str, request_id: str, stage: str) -> None:
        try:
            current = scope.session_id()
        except LockCapabilityError as exc:
            raise LockRolledBackError(
                f"failed to get connection id {stage}",
                lock_name=lock_name,
                session_id=expected,
                original_error=exc,
            ) from exc
        logger.info("[%s] %s session ID: %s", request_id, stage, current)
        if current != expected:
            raise LockSessionMismatchError(
                f"session changed from {expected} to {current} {stage}",
                lock_name=lock_name,
                session_id=expected,
            )

    @staticmethod
    def _rollback(scope: LockScope, discard: bool) -> None:
        try:
            scope.rollback(discard=discard)
        except SQLAlchemyError as exc:
            logger.warning("rollback failed: %s", exc)

    def _record(self, status: str, lock_name: str, session_id: str) -> None:
        """Write a lock_history row in its own session. Failures are logged, not raised."""
        if not self.record_history:
            return
        try:
            with self.database.scope() as scope:
                repo = Repository(scope.session)
                if status == STATUS_ACQUIRED:
                    repo.record_lock_acquired(lock_name, session_id)
                else:
                    repo.record_lock_released(lock_name, session_id)
        except SQLAlchemyError as exc:
            logger.warning("failed to save lock history (%s %s by %s): %s", status, lock_name, session_id, exc)
