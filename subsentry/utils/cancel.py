"""Cancellation / deadline token passed into every public service call."""

from __future__ import annotations

import threading
import time
from typing import Optional

from subsentry.errors import OperationCancelled


class CancelToken:
    """Cooperative cancellation flag with an optional monotonic deadline.

    Services call :meth:`raise_if_cancelled` before each store round trip.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = (time.monotonic() + timeout) if timeout is not None else None
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")


def check(token: Optional[CancelToken]) -> None:
    """No-op when no token was supplied."""
    if token is not None:
        token.raise_if_cancelled()
