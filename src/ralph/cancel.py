"""Cancellation token threaded from the top-level run down to each agent turn."""

from __future__ import annotations

import threading
from typing import Callable, Optional


class RunCancelledError(Exception):
    """Raised when a run is stopped explicitly."""

    def __init__(self, message: str = "run cancelled") -> None:
        super().__init__(message)


class DeadlineExceededError(RunCancelledError):
    """Raised when a run outlives its deadline."""

    def __init__(self, message: str = "run deadline exceeded") -> None:
        super().__init__(message)


class CancelToken:
    """One-shot cancellation signal with an optional deadline.

    Callbacks registered with :meth:`add_callback` run exactly once, on the
    thread that cancels (or immediately, when the token is already cancelled).
    """

    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._deadline = False
        self._timer: Optional[threading.Timer] = None
        if timeout is not None:
            self._timer = threading.Timer(max(timeout, 0.0), self._expire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def deadline_exceeded(self) -> bool:
        return self._event.is_set() and self._deadline

    def cancel(self) -> None:
        """Cancel the token; later calls are no-ops."""
        self._trigger(deadline=False)

    def _expire(self) -> None:
        self._trigger(deadline=True)

    def _trigger(self, *, deadline: bool) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._deadline = deadline
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        if self._timer is not None and not deadline:
            self._timer.cancel()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def error(self) -> RunCancelledError:
        """Build the exception that describes why the token fired."""
        if self._deadline:
            return DeadlineExceededError()
        return RunCancelledError()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self.error()
