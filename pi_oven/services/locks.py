"""Per-key serialization locks.

One lock per Pi id guards bake, unbake, disk attach/detach and file transfer for
that Pi; one lock per bakeform name guards mounting it. Locks are created lazily
and never removed.

Usage:
    from pi_oven.services.locks import LockTable

    node_locks = LockTable("pi")
    with node_locks.hold("pi-01"):
        # bake/unbake
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from pi_oven.logging import LoggerFactory


log = LoggerFactory.for_nodes()


class LockTable:
    """Lazily created locks keyed by string, each created exactly once."""

    def __init__(self, kind: str = "resource"):
        self._kind = kind
        # Guards insertion so concurrent first access yields one shared lock.
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def is_held(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        """Context manager holding the lock for ``key``.

        Example:
            with node_locks.hold("pi-01"):
                unbake(...)
        """
        lock = self.get(key)
        lock.acquire()
        log.debug(f"Acquired {self._kind} lock {key}")
        try:
            yield
        finally:
            lock.release()
            log.debug(f"Released {self._kind} lock {key}")
