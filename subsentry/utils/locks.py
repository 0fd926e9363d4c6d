"""
Per-user mutual exclusion for read-modify-write service calls.

Duplicate search followed by a create/merge is not safe with two writers for
the same user, so every reconciliation and alert-generation call runs under
the lock for its user id. Different users never contend.

In-process only: a multi-process deployment needs an advisory lock in the
database keyed by the same user id.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class UserLockRegistry:
    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                # Re-entrant: engine helpers may call each other for the same user
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        lock = self._lock_for(str(user_id))
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared default so separately constructed services still serialize per user.
default_registry = UserLockRegistry()
