"""
Pulse Migrator Concurrency Gate

Non-blocking mutual exclusion: at most one long-running operation at a time.
"""

import threading
from datetime import datetime
from typing import Optional

from pulse_migrator.exceptions import BusyError
from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import RunKind


logger = get_logger("gate")


class GateHandle:
    """Proof of gate ownership.

    Use as a context manager or call release(). Releasing twice is a no-op,
    so cleanup paths that race (cancellation vs. natural completion) are safe.
    """

    def __init__(self, gate: "ConcurrencyGate", kind: RunKind):
        self._gate = gate
        self.kind = kind
        self.acquired_at = datetime.now().isoformat()
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Release the gate. Returns True only for the call that released it."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._gate._release(self)
        return True

    def __enter__(self) -> "GateHandle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<GateHandle {self.kind.value} {state}>"


class ConcurrencyGate:
    """Exactly one winner among concurrent acquire() attempts; losers never queue."""

    def __init__(self):
        self._lock = threading.Lock()
        self._holder: Optional[GateHandle] = None

    def acquire(self, kind: RunKind) -> GateHandle:
        """Take the gate or raise BusyError immediately."""
        with self._lock:
            if self._holder is not None:
                holder = self._holder.kind
                raise BusyError(
                    f"Cannot start {kind.value.lower()}: {holder.value.lower()} in progress",
                    holder=holder,
                )
            handle = GateHandle(self, kind)
            self._holder = handle
        logger.debug("Gate acquired for %s", kind.value)
        return handle

    def _release(self, handle: GateHandle):
        with self._lock:
            if self._holder is handle:
                self._holder = None
                logger.debug("Gate released by %s", handle.kind.value)

    def is_busy(self) -> bool:
        with self._lock:
            return self._holder is not None

    def holds(self, handle: Optional[GateHandle]) -> bool:
        """True if handle is the current, unreleased owner."""
        with self._lock:
            return handle is not None and self._holder is handle

    @property
    def holder(self) -> Optional[RunKind]:
        with self._lock:
            return self._holder.kind if self._holder else None
