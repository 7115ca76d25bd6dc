"""Cancellable one-shot timers.

Each component that arms a timer keeps the returned :class:`TimerHandle` and is
the only one allowed to cancel it. Cancelling a handle that already fired (or
was already cancelled) is a no-op.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Optional

_PENDING = "pending"
_FIRED = "fired"
_CANCELLED = "cancelled"


class TimerHandle:
    def __init__(self, callback: Callable[[], None], *, name: str = "timer") -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._state = _PENDING
        self._timer: Optional[threading.Timer] = None
        self.name = name

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._state == _PENDING

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._state == _FIRED

    def cancel(self) -> bool:
        """Cancel the timer; returns True only if it was still pending."""
        with self._lock:
            if self._state != _PENDING:
                return False
            self._state = _CANCELLED
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
        return True

    def fire(self) -> bool:
        """Run the callback unless the handle was cancelled first."""
        with self._lock:
            if self._state != _PENDING:
                return False
            self._state = _FIRED
            self._timer = None
        self._callback()
        return True


class ThreadingScheduler:
    """Scheduler backed by daemon ``threading.Timer`` instances."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(
        self,
        delay: float,
        callback: Callable[[], None],
        *,
        name: str = "timer",
    ) -> TimerHandle:
        handle = TimerHandle(callback, name=name)
        timer = threading.Timer(max(0.0, float(delay)), handle.fire)
        timer.daemon = True
        timer.name = name
        handle._timer = timer
        timer.start()
        return handle


__all__ = ["ThreadingScheduler", "TimerHandle"]
