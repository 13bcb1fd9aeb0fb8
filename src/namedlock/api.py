"""HTTP surface for the lock coordinator.

Every handler answers 200: failures of the lock protocol come back as
``success: false`` with a message, so clients have to look at ``success``.
Sync handlers run in FastAPI's thread pool, one database session each.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from namedlock.config import AppConfig
from namedlock.lib.database import Database, get_engine, init_db
from namedlock.lib.db_lock import (
    LockAcquisitionError,
    LockError,
    LockNotAcquiredError,
    LockRolledBackError,
    create_lock_backend,
)
from namedlock.services.coordinator import GuardedOutcome, LockCoordinator
from namedlock.services.repository import Repository

logger = logging.getLogger(__name__)


class AcquireLockRequest(BaseModel):
    lock_name: str
    timeout: int = -1


class HoldReleaseRequest(BaseModel):
    lock_name: str
    timeout: int = -1
    hold_duration: float = 5


class ProductLockRequest(BaseModel):
    product_code: str
    quantity: int = 1
    timeout: int = -1


class LockResponse(BaseModel):
    success: bool
    session_id: Optional[str] = None
    message: Optional[str] = None


class ItemLockResponse(LockResponse):
    item: Optional[dict[str, Any]] = None


class LockStatusResponse(BaseModel):
    lock_name: str
    is_locked: bool = False
    is_free: Optional[bool] = None
    owner_session_id: Optional[str] = None
    current_session_id: Optional[str] = None
    is_owned_by_current_session: bool = False
    success: bool = True
    message: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: Optional[str] = None
    success: bool = True
    message: Optional[str] = None


def build_coordinator(config: AppConfig) -> LockCoordinator:
    """Create engine, lock backend and coordinator from configuration."""
    url = config.database_url
    engine = get_engine(url, pool_size=config.pool_size, max_overflow=config.max_overflow)
    backend = create_lock_backend(config.lock_backend, database_url=url)
    return LockCoordinator(Database(engine, backend), record_history=config.lock_history)


def get_coordinator(request: Request) -> LockCoordinator:
    return request.app.state.coordinator


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, LockRolledBackError):
        return f"Lock was acquired but the transaction was rolled back: {exc}"
    if isinstance(exc, (LockAcquisitionError, LockNotAcquiredError)):
        return f"Lock was not acquired: {exc}"
    if isinstance(exc, LockError):
        return f"Lock operation failed: {exc}"
    return f"Database error: {exc}"


def _failure_response(exc: Exception, response_cls=LockResponse) -> LockResponse:
    logger.warning("lock operation failed: %s", exc)
    return response_cls(success=False, session_id=getattr(exc, "session_id", None), message=_failure_message(exc))


def _guarded_response(outcome: GuardedOutcome, action: str) -> ItemLockResponse:
    return ItemLockResponse(
        success=True,
        session_id=outcome.session_id,
        message=f"Lock acquired, {action} and released successfully",
        item=outcome.result,
    )


def create_app(config: Optional[AppConfig] = None, coordinator: Optional[LockCoordinator] = None) -> FastAPI:
    """Application factory.

    Pass ``coordinator`` to reuse an existing one (tests); otherwise it is
    built from ``config`` and its database is disposed on shutdown, which
    closes the connections and drops any lock they still hold.
    """
    if coordinator is None:
        coordinator = build_coordinator(config or AppConfig())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("closing database connections")
        coordinator.database.dispose()

    app = FastAPI(title="namedlock", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.post("/api/locks", response_model=LockResponse)
    def acquire_lock(req: AcquireLockRequest, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                result = coord.acquire(scope, req.lock_name, req.timeout)
                if result.acquired:
                    message = f"Lock acquired successfully. Current connection ID: {result.session_id}"
                else:
                    owner = coord.get_owner(scope, req.lock_name)
                    message = f"Lock is already held by session ID: {owner}" if owner else "Failed to acquire lock"
        except (LockError, SQLAlchemyError) as exc:
            return _failure_response(exc)
        return LockResponse(success=result.acquired, session_id=result.session_id, message=message)

    @app.post("/api/locks/hold-and-release", response_model=LockResponse)
    def acquire_hold_release(req: HoldReleaseRequest, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            session_id = coord.acquire_hold_release(req.lock_name, req.timeout, req.hold_duration)
        except (LockError, SQLAlchemyError) as exc:
            return _failure_response(exc)
        return LockResponse(
            success=True,
            session_id=session_id,
            message=f"Lock acquired, held for {req.hold_duration} seconds and released successfully",
        )

    @app.post("/api/locks/process", response_model=ItemLockResponse)
    def acquire_process_release(req: ProductLockRequest, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            outcome = coord.process_inventory(req.product_code, req.quantity, req.timeout)
        except (LockError, SQLAlchemyError) as exc:
            return _failure_response(exc, ItemLockResponse)
        return _guarded_response(outcome, "inventory processed")

    @app.post("/api/locks/order", response_model=ItemLockResponse)
    def acquire_order_release(req: ProductLockRequest, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            outcome = coord.place_order(req.product_code, req.quantity, req.timeout)
        except (LockError, SQLAlchemyError) as exc:
            return _failure_response(exc, ItemLockResponse)
        return _guarded_response(outcome, "order placed")

    @app.delete("/api/locks/{lock_name}", response_model=LockResponse)
    def release_lock(lock_name: str, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                result = coord.release(scope, lock_name)
        except (LockError, SQLAlchemyError) as exc:
            return _failure_response(exc)
        if result.released:
            message = "Lock released successfully"
        else:
            message = "Failed to release lock. It may be held by another session or not exist."
        return LockResponse(success=result.released, session_id=result.session_id, message=message)

    @app.get("/api/locks/{lock_name}", response_model=LockStatusResponse)
    def lock_status(lock_name: str, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                status = coord.status(scope, lock_name)
        except (LockError, SQLAlchemyError) as exc:
            return LockStatusResponse(lock_name=lock_name, success=False, message=_failure_message(exc))
        return LockStatusResponse(
            lock_name=lock_name,
            is_locked=status.is_locked,
            is_free=status.is_free,
            owner_session_id=status.owner_session_id,
            current_session_id=status.current_session_id,
            is_owned_by_current_session=status.is_owned_by_current_session,
        )

    @app.get("/api/locks/{lock_name}/history")
    def lock_history(lock_name: str, limit: int = 50, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                entries = [e.to_dict() for e in Repository(scope.session).list_lock_history(lock_name, limit=limit)]
        except SQLAlchemyError as exc:
            return {"lock_name": lock_name, "success": False, "message": _failure_message(exc), "entries": []}
        return {"lock_name": lock_name, "success": True, "entries": entries}

    @app.get("/api/products/{product_code}")
    def product_detail(product_code: str, coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                repo = Repository(scope.session)
                product = repo.get_product(product_code)
                orders = [o.to_dict() for o in repo.list_orders_by_code(product_code)]
        except SQLAlchemyError as exc:
            return {"product_code": product_code, "success": False, "message": _failure_message(exc)}
        if product is None:
            return {"product_code": product_code, "success": False, "message": "Product not found"}
        return {**product.to_dict(), "success": True, "orders": orders}

    @app.get("/api/session", response_model=SessionResponse)
    def current_session(coord: LockCoordinator = Depends(get_coordinator)):
        try:
            with coord.database.scope() as scope:
                session_id = coord.current_session_id(scope)
        except (LockError, SQLAlchemyError) as exc:
            return SessionResponse(success=False, message=_failure_message(exc))
        return SessionResponse(session_id=session_id)

    return app


def create_database_app(config: AppConfig) -> FastAPI:
    """create_app() after making sure the tables exist."""
    coordinator = build_coordinator(config)
    init_db(coordinator.database.engine)
    return create_app(coordinator=coordinator)
