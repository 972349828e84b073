import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class UploadLocks:
    """One asyncio.Lock per upload id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, upload_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(upload_id, asyncio.Lock())
        self._users[upload_id] = self._users.get(upload_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[upload_id] -= 1
            if self._users[upload_id] == 0:
                del self._users[upload_id]
                del self._locks[upload_id]

    def __len__(self) -> int:
        return len(self._locks)
