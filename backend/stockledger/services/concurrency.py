# Overview: Locking and retry primitives shared by every ledger write path.

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Hashable, Iterable

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import LockTimeout

logger = logging.getLogger(__name__)

"""
Ledger locking protocol (authoritative)

- Every key a batch touches is locked before any mutation, in ascending
  key order. Stock keys are ("stock", product_id, size_id); order keys are
  ("order", order_id). One total order over all keys keeps overlapping
  batches deadlock-free.
- Waits are bounded; on expiry everything already held is released and
  LockTimeout is raised.
- Locks are held for one batch only and released after commit/rollback.
"""


def stock_key(product_id: int, size_id: int) -> tuple:
    return ("stock", product_id, size_id)


def order_key(order_id: int) -> tuple:
    return ("order", order_id)


class KeyLockRegistry:
    """
    Process-wide registry of per-key mutexes.

    SQLite ignores SELECT ... FOR UPDATE, so row exclusion between threads of
    one process comes from here; databases that honour FOR UPDATE get both.

    Entries are reference counted by holders and waiters and dropped when the
    count reaches zero, so the registry only tracks keys in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._locks.get(key)
        return bool(entry and entry[0].locked())

    @contextmanager
    def hold(self, keys: Iterable[Hashable], timeout: float):
        """Acquire all keys in sorted order, yield the ordered keys, release in reverse."""
        ordered = sorted(set(keys))
        acquired: list[tuple[Hashable, threading.Lock]] = []
        deadline = time.monotonic() + timeout
        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    logger.warning("Ledger lock wait expired for %s after %.2fs", key, timeout)
                    raise LockTimeout(key, timeout)
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


def get_lock_registry() -> KeyLockRegistry:
    """The registry bound to the current Flask app (created on first use)."""
    return current_app.extensions.setdefault("ledger_locks", KeyLockRegistry())


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05, retry_on=(OperationalError, StaleDataError)):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locked database, deadlock victims) and
    StaleDataError (optimistic version conflicts) unless retry_on says
    otherwise. The session is rolled back before every retry; the last
    error is re-raised once attempts run out.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))

