"""Admission control for concurrent relay sessions.

A single process-wide counter bounded by a fixed ceiling. Acquire and
release never block and never await, so no lock is held across I/O.

Example:
    admission = AdmissionController(ceiling=1024)

    if not admission.try_acquire():
        return 503  # Service Unavailable
    try:
        await run_session()
    finally:
        admission.release()
"""

from __future__ import annotations

import threading

from vlessgate.core.exceptions import AdmissionRejected


class AdmissionController:
    """Bounded counter of active sessions."""

    __slots__ = ("_ceiling", "_active", "_lock")

    def __init__(self, ceiling: int) -> None:
        if ceiling < 1:
            raise ValueError(f"ceiling must be at least 1, got {ceiling}")
        self._ceiling = ceiling
        self._active = 0
        self._lock = threading.Lock()

    @property
    def ceiling(self) -> int:
        return self._ceiling

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> int:
        return self._ceiling - self._active

    def try_acquire(self) -> bool:
        """Take a slot. Returns False, leaving the count unchanged, when full."""
        with self._lock:
            self._active += 1
            if self._active > self._ceiling:
                self._active -= 1
                return False
            return True

    def acquire(self) -> None:
        """Take a slot or raise AdmissionRejected."""
        if not self.try_acquire():
            raise AdmissionRejected(self._ceiling)

    def release(self) -> None:
        """Return a slot taken by acquire or try_acquire."""
        with self._lock:
            if self._active == 0:
                raise RuntimeError("release() called with no active sessions")
            self._active -= 1
