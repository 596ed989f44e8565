"""
Cancellation tokens shared between the orchestrator and stage operations.
"""

import threading
from typing import Callable, List, Optional

from pulse_migrator.exceptions import OperationCancelled
from pulse_migrator.logging_config import get_logger


logger = get_logger("cancellation")


class CancellationToken:
    """Cooperative cancellation for one run.

    Stage operations either poll `raise_if_cancelled()` between I/O calls or
    register a callback (e.g. terminating a subprocess) with `on_cancel()`.
    A deadline armed with `start_deadline()` cancels the token with
    `timed_out` set.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self.timed_out = False
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled", timed_out: bool = False):
        with self._lock:
            callbacks = self._mark_cancelled(reason, timed_out)
        self._run_callbacks(callbacks)

    def _mark_cancelled(self, reason: str, timed_out: bool) -> List[Callable[[], None]]:
        """Set the cancelled state. Caller holds the lock."""
        if self._event.is_set():
            return []
        self.reason = reason
        self.timed_out = timed_out
        self._event.set()
        return list(self._callbacks)

    def _run_callbacks(self, callbacks: List[Callable[[], None]]):
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback; runs immediately if already cancelled.

        Returns a function that unregisters it.
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()

        def remove():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)
        return remove

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled(
                f"Operation {self.reason}" if self.reason else "Operation cancelled",
                timed_out=self.timed_out,
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def start_deadline(self, seconds: Optional[float]):
        """Cancel the token after `seconds`. Re-arming replaces the previous deadline."""
        self.clear_deadline()
        if not seconds or seconds <= 0:
            return
        timer = threading.Timer(seconds, self._expire, args=(seconds,))
        timer.daemon = True
        with self._lock:
            self._timer = timer
        timer.start()

    def _expire(self, seconds: float):
        with self._lock:
            # A cleared or replaced deadline never cancels
            if self._timer is not threading.current_thread():
                return
            self._timer = None
            callbacks = self._mark_cancelled(f"timed out after {seconds:g}s", True)
        self._run_callbacks(callbacks)

    def clear_deadline(self):
        """Disarm the deadline. Once this returns the deadline cannot fire."""
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
