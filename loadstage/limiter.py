"""
Global ceiling on concurrently active virtual users.

Problem: every scenario resizes its own pool on its own clock. When windows
overlap, two supervisors can try to spawn at the same moment and overshoot
the run-wide limit.

Solution: one UserCeiling shared by every ScenarioRunner. Slots are granted
and returned under a lock, so the total never exceeds the ceiling no matter
how spawns interleave.

Usage:
    ceiling = UserCeiling(max_users=200)

    granted = ceiling.try_acquire(5)   # may be fewer than asked
    ...
    ceiling.release(granted)
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass
class CeilingStats:
    """Snapshot of ceiling state."""
    max_users: Optional[int]
    active: int
    peak: int
    total_acquired: int
    total_denied: int


class UserCeiling:
    """
    Thread-safe counter of virtual-user slots.

    ``max_users=None`` means unlimited; the ceiling then only tracks usage.
    """

    def __init__(self, max_users: Optional[int] = None) -> None:
        if max_users is not None and max_users < 1:
            raise ValueError("max_users must be >= 1")

        self._max_users = max_users

        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0
        self._total_acquired = 0
        self._total_denied = 0

    def try_acquire(self, count: int = 1) -> int:
        """
        Grant up to ``count`` slots without blocking.

        Returns:
            Number of slots granted (0..count). The caller owns them until
            release().
        """
        if count <= 0:
            return 0
        with self._lock:
            if self._max_users is None:
                granted = count
            else:
                granted = max(0, min(count, self._max_users - self._active))
            self._active += granted
            self._peak = max(self._peak, self._active)
            self._total_acquired += granted
            self._total_denied += count - granted
            return granted

    def release(self, count: int = 1) -> None:
        """Return slots previously granted by try_acquire()."""
        if count <= 0:
            return
        with self._lock:
            if count > self._active:
                raise RuntimeError("released more user slots than were acquired")
            self._active -= count

    def stats(self) -> CeilingStats:
        """Current ceiling state for monitoring."""
        with self._lock:
            return CeilingStats(
                max_users=self._max_users,
                active=self._active,
                peak=self._peak,
                total_acquired=self._total_acquired,
                total_denied=self._total_denied,
            )

    @property
    def max_users(self) -> Optional[int]:
        return self._max_users

    @property
    def active(self) -> int:
        with self._lock:
            return self._active
