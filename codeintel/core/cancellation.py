"""
Cooperative cancellation.

A ``CancellationToken`` is passed explicitly through every async boundary of a
completion request. Work polls it at fixed checkpoints (before context
analysis, before issuing a backend call). Once a backend call is in flight it
is never interrupted; it completes or times out and its result is discarded.
"""
from threading import Lock
from typing import Callable, List, Optional


class OperationCancelledError(Exception):
    """Raised when a checkpoint observes a cancelled token."""


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._lock = Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(self._reason or "operation cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Checkpoint helper accepting an optional token."""
    if token is not None:
        token.raise_if_cancelled()
