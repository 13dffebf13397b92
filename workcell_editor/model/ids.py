"""Monotonic identifier allocation.

One allocator is shared by every entity kind of an open document, so ids are
unique across tables and never handed out twice. A new document gets a new
allocator; ids do not carry across documents.
"""

from __future__ import annotations

import threading


class IdAllocator:
    """Thread-safe monotonic counter.

    Reads are lock-free; increments happen under a lock so that background
    jobs peeking at ``last`` never see a torn value.

    Args:
        start: Last id already in use. The next allocation returns ``start + 1``.
    """

    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._last = start

    @property
    def last(self) -> int:
        """Most recently allocated id (0 if none)."""
        return self._last

    def allocate(self) -> int:
        with self._lock:
            self._last += 1
            return self._last

    def advance_past(self, used: int) -> None:
        """Ensure future ids are greater than ``used``."""
        with self._lock:
            if used > self._last:
                self._last = used
