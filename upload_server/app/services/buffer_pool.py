import threading
from contextlib import contextmanager
from typing import Iterator, List

from upload_server.logger_config import setup_logger

logger = setup_logger()


class BufferPool:
    def __init__(self, max_retained: int = 64):
        """
        Initialize a pool of reusable byte buffers.

        Args:
            max_retained: Maximum number of idle buffers kept for reuse. Buffers
                returned while the pool is full are dropped.
        """
        if max_retained < 0:
            raise ValueError("max_retained must not be negative")

        self._max_retained = max_retained
        self._free: List[bytearray] = []
        self._lock = threading.Lock()

    def rent(self, size: int) -> bytearray:
        """Take the smallest idle buffer of at least ``size`` bytes, allocating one if none fits."""
        if size <= 0:
            raise ValueError("Buffer size must be positive")

        with self._lock:
            best = None
            for index, buffer in enumerate(self._free):
                if len(buffer) >= size and (best is None or len(buffer) < len(self._free[best])):
                    best = index
            if best is not None:
                return self._free.pop(best)
        return bytearray(size)

    def give_back(self, buffer: bytearray):
        """Return a rented buffer to the pool."""
        with self._lock:
            if len(self._free) < self._max_retained:
                self._free.append(buffer)

    @contextmanager
    def lease(self, size: int) -> Iterator[bytearray]:
        """Rent a buffer for the duration of a ``with`` block."""
        buffer = self.rent(size)
        try:
            yield buffer
        finally:
            self.give_back(buffer)

    @property
    def idle_count(self) -> int:
        """Number of buffers currently waiting for reuse."""
        with self._lock:
            return len(self._free)
