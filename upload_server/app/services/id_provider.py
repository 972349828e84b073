import uuid
from typing import Protocol


class IdProvider(Protocol):
    async def create_id(self, metadata: str) -> str:
        """Return a new, unique, filesystem-safe upload id."""
        ...


class GuidIdProvider:
    """Allocates upload ids from random UUIDs, ignoring the metadata."""

    async def create_id(self, metadata: str) -> str:
        return uuid.uuid4().hex
