"""Per-group single-writer locks."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .exceptions import LockTimeoutError


class GroupLocks:
    """One lock per group so that ledger writes for a group never interleave."""

    def __init__(self, timeout: float = 5.0):
        """Initialize the lock registry."""
        self.timeout = timeout
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, group_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(group_id)
            if lock is None:
                lock = self._locks[group_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, group_id: int, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the group's write lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        lock = self._lock_for(group_id)
        if not lock.acquire(timeout=wait):
            raise LockTimeoutError(group_id, wait)
        try:
            yield
        finally:
            lock.release()
