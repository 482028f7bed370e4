"""Monotonic, collision-free integer ids derived from the wall clock.

Message ids double as creation timestamps (epoch milliseconds). Two ids
requested within the same millisecond would collide, so the allocator
never hands out a value lower than or equal to the previous one.
"""

import threading
import time


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class IdAllocator:
    """Hands out strictly increasing ids: max(now, last + 1)."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        return self.next_block(1)

    def next_block(self, size: int) -> int:
        """Reserve `size` consecutive ids and return the first one."""
        if size < 1:
            raise ValueError("size must be positive")
        with self._lock:
            start = max(now_ms(), self._last + 1)
            self._last = start + size - 1
            return start

    def observe(self, used_id: int) -> None:
        """Make sure future ids are greater than an id allocated elsewhere (e.g. imported)."""
        with self._lock:
            self._last = max(self._last, used_id)


default_allocator = IdAllocator()
