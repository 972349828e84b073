from typing import AsyncIterator, Protocol

from starlette.requests import ClientDisconnect, Request

from upload_server.logger_config import setup_logger

logger = setup_logger()


class ByteSource(Protocol):
    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes. An empty result means end of stream."""
        ...


class CancellationToken:
    """Signals that the party producing the bytes has gone away."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class RequestByteSource:
    """Reads a request body in bounded blocks.

    A client disconnect cancels the token and ends the stream instead of raising.
    """

    def __init__(self, request: Request, cancellation: CancellationToken):
        self._chunks: AsyncIterator[bytes] = request.stream().__aiter__()
        self._cancellation = cancellation
        self._pending = b""

    async def read(self, size: int) -> bytes:
        while not self._pending:
            try:
                self._pending = await self._chunks.__anext__()
            except StopAsyncIteration:
                return b""
            except ClientDisconnect:
                logger.info("Client disconnected while sending upload data")
                self._cancellation.cancel()
                return b""

        block, self._pending = self._pending[:size], self._pending[size:]
        return block


class BytesSource:
    """Serves an in-memory payload, at most ``max_block`` bytes per read."""

    def __init__(self, data: bytes, max_block: int = 8192):
        self._data = memoryview(data)
        self._offset = 0
        self._max_block = max_block

    async def read(self, size: int) -> bytes:
        end = self._offset + min(size, self._max_block)
        block = bytes(self._data[self._offset:end])
        self._offset += len(block)
        return block
