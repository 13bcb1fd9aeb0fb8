"""Concurrent client harness for the lock server.

Each LockClient talks to the HTTP API; run_parallel starts several of them
at once so lock contention becomes visible in the printed timelines.
"""
import concurrent.futures
import time
from typing import Any, Callable, Optional

import httpx

DEFAULT_BASE_URL = "http://localhost:8080"


class LockClient:
    def __init__(self, client_id: int, base_url: str = DEFAULT_BASE_URL, timeout: float = 30 * 60, http: Optional[httpx.Client] = None):
        self.id = client_id
        # hold/acquire calls may block for a long time on the server
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self._started = time.monotonic()

    def close(self) -> None:
        self.http.close()

    def log(self, message: str) -> None:
        print(f"Client {self.id} [{time.monotonic() - self._started:.1f}s]: {message}")

    def _get(self, path: str) -> dict:
        resp = self.http.get(path)
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, payload: dict) -> dict:
        resp = self.http.post(path, json=payload)
        resp.raise_for_status()
        return resp.json()

    def get_session_id(self) -> Optional[str]:
        return self._get("/api/session").get("session_id")

    def get_lock_status(self, lock_name: str) -> dict:
        return self._get(f"/api/locks/{lock_name}")

    def get_lock_history(self, lock_name: str) -> dict:
        return self._get(f"/api/locks/{lock_name}/history")

    def acquire(self, lock_name: str, timeout: int = -1) -> dict:
        return self._post("/api/locks", {"lock_name": lock_name, "timeout": timeout})

    def release(self, lock_name: str) -> dict:
        resp = self.http.delete(f"/api/locks/{lock_name}")
        resp.raise_for_status()
        return resp.json()

    def acquire_hold_release(self, lock_name: str, timeout: int = -1, hold_duration: float = 5) -> dict:
        return self._post(
            "/api/locks/hold-and-release",
            {"lock_name": lock_name, "timeout": timeout, "hold_duration": hold_duration},
        )

    def acquire_process_release(self, product_code: str, quantity: int = 1, timeout: int = -1) -> dict:
        return self._post("/api/locks/process", {"product_code": product_code, "quantity": quantity, "timeout": timeout})

    def acquire_order_release(self, product_code: str, quantity: int = 1, timeout: int = -1) -> dict:
        return self._post("/api/locks/order", {"product_code": product_code, "quantity": quantity, "timeout": timeout})


def run_hold_release(client: LockClient, lock_name: str, hold_duration: float = 5) -> Optional[dict]:
    try:
        client.log(f"Session ID: {client.get_session_id()}")
        client.log(f"Acquiring, holding for {hold_duration} seconds, and releasing lock...")
        result = client.acquire_hold_release(lock_name, -1, hold_duration)
    except httpx.HTTPError as exc:
        client.log(f"Operation failed: {exc}")
        return None
    client.log(f"Operation result: {result}")
    return result


def run_process(client: LockClient, product_code: str, quantity: int = 1) -> Optional[dict]:
    try:
        client.log(f"Lock status before operation: {client.get_lock_status(product_code)}")
        client.log(f"Acquiring, processing, and releasing lock for product: {product_code}, quantity: {quantity}")
        result = client.acquire_process_release(product_code, quantity, -1)
        client.log(f"Operation result: {result}")
        client.log(f"Lock status after operation: {client.get_lock_status(product_code)}")
    except httpx.HTTPError as exc:
        client.log(f"Operation failed: {exc}")
        return None
    return result


def run_order(client: LockClient, product_code: str, quantity: int = 1) -> Optional[dict]:
    try:
        client.log(f"Acquiring, ordering, and releasing lock for product: {product_code}, quantity: {quantity}")
        result = client.acquire_order_release(product_code, quantity, -1)
    except httpx.HTTPError as exc:
        client.log(f"Operation failed: {exc}")
        return None
    client.log(f"Operation result: {result}")
    return result


def run_acquire(client: LockClient, lock_name: str, hold_duration: float = 5, timeout: int = 10) -> Optional[dict]:
    """Acquire and release through separate requests.

    The two requests may land on different pooled connections, in which
    case the release is refused: the lock belongs to the connection that
    took it.
    """
    try:
        acquired = client.acquire(lock_name, timeout)
        client.log(f"Acquire result: {acquired}")
        if not acquired.get("success"):
            return acquired
        time.sleep(hold_duration)
        released = client.release(lock_name)
    except httpx.HTTPError as exc:
        client.log(f"Operation failed: {exc}")
        return None
    client.log(f"Release result: {released}")
    return released


def run_parallel(
    start_id: int,
    parallel_count: int,
    target: str,
    run_func: Callable[..., Any],
    *args,
    base_url: str = DEFAULT_BASE_URL,
    client_factory: Optional[Callable[[int], LockClient]] = None,
) -> list:
    """Run ``run_func(client, target, *args)`` for clients start_id..start_id+count-1 at once."""
    factory = client_factory or (lambda cid: LockClient(cid, base_url=base_url))
    print(f"Starting {parallel_count} clients in parallel (IDs: {start_id}-{start_id + parallel_count - 1})")

    def _one(client_id: int):
        client = factory(client_id)
        try:
            return run_func(client, target, *args)
        finally:
            client.close()

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, parallel_count)) as ex:
        futures = [ex.submit(_one, start_id + i) for i in range(parallel_count)]
        results = [f.result() for f in futures]
    print("All clients completed")
    return results
