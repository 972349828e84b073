import asyncio
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from upload_server import config
from upload_server.app.services import sidecar_store as fields
from upload_server.app.services.buffer_pool import BufferPool
from upload_server.app.services.byte_source import ByteSource, CancellationToken
from upload_server.app.services.errors import (
    IdAllocationError,
    SourceReadError,
    StorageIOError,
    UploadLengthConflictError,
    UploadOverflowError,
)
from upload_server.app.services.id_provider import GuidIdProvider, IdProvider
from upload_server.app.services.sidecar_store import SidecarStore
from upload_server.logger_config import setup_logger

logger = setup_logger()

CHECKSUM_ALGORITHMS = ("sha1", "sha256", "md5")

# Own pool so buffer contents never reach other parts of the process
_buffer_pool = BufferPool(config.MAX_POOLED_BUFFERS)


def _parse_offset(upload_id: str, field: str, text: Optional[str]) -> Optional[int]:
    if not text or not text.strip():
        return None
    try:
        return int(text.strip())
    except ValueError as e:
        raise StorageIOError(f"Corrupt {field} record for upload {upload_id}: {text!r}") from e


@dataclass(frozen=True)
class ChunkStatus:
    start: Optional[int]
    complete: bool


class DiskUploadStore:
    def __init__(
        self,
        directory: Path,
        id_provider: Optional[IdProvider] = None,
        read_buffer_size: int = config.READ_BUFFER_SIZE,
        write_buffer_size: int = config.WRITE_BUFFER_SIZE,
        buffer_pool: Optional[BufferPool] = None,
    ):
        if read_buffer_size <= 0 or write_buffer_size <= 0:
            raise ValueError("Buffer sizes must be positive")

        self.directory = Path(directory)
        self.id_provider = id_provider or GuidIdProvider()
        self.read_buffer_size = read_buffer_size
        self.write_buffer_size = write_buffer_size
        self.sidecars = SidecarStore(self.directory)
        self._buffer_pool = buffer_pool or _buffer_pool

    async def initialize(self):
        """Create the upload directory if it doesn't exist."""
        logger.info("Initializing upload store...")
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        logger.debug(f"Upload directory created/verified: {self.directory}")

    def get_file_path(self, upload_id: str) -> Path:
        """Get the path of the data file for an upload."""
        return self.directory / upload_id

    async def create_upload(self, upload_length: Optional[int], metadata: str) -> str:
        """Allocate an upload id and create its data file and sidecar records.

        Args:
            upload_length: Total number of bytes the client will send, or None
                when the length will be supplied later.
            metadata: Upload-Metadata text, stored verbatim.

        Returns:
            str: The new upload id.

        Raises:
            IdAllocationError: if the id provider fails.
            StorageIOError: if any file cannot be created. Files created before
                the failure are left in place.
        """
        if upload_length is not None and upload_length < 0:
            raise ValueError("Upload length must not be negative")

        try:
            upload_id = await self.id_provider.create_id(metadata)
        except Exception as e:
            raise IdAllocationError(f"Could not allocate an upload id: {e}") from e
        if not upload_id:
            raise IdAllocationError("Id provider returned an empty upload id")

        file_path = self.get_file_path(upload_id)
        try:
            async with aiofiles.open(file_path, 'wb'):
                pass
        except OSError as e:
            raise StorageIOError(f"Could not create data file for upload {upload_id}: {e}") from e

        await self.sidecars.create_empty(upload_id, fields.CHUNK_COMPLETE)
        await self.sidecars.create_empty(upload_id, fields.CHUNK_START)
        await self.sidecars.create_empty(upload_id, fields.EXPIRATION)

        if upload_length is None:
            await self.sidecars.create_empty(upload_id, fields.UPLOAD_LENGTH)
        else:
            await self.sidecars.write_text(upload_id, fields.UPLOAD_LENGTH, upload_length)

        await self.sidecars.write_text(upload_id, fields.METADATA, metadata)

        logger.info(f"Created upload {upload_id} (upload length: {upload_length})")
        return upload_id

    async def set_expiration(self, upload_id: str, expires: datetime):
        """Overwrite the expiration record. The upload's existence is not checked."""
        if expires.tzinfo is None or expires.utcoffset() is None:
            raise ValueError("Expiration must be a timezone-aware datetime")

        text = expires.astimezone(timezone.utc).isoformat(timespec="microseconds")
        await self.sidecars.write_text(upload_id, fields.EXPIRATION, text)
        logger.debug(f"Upload {upload_id} expires at {text}")

    async def get_expiration(self, upload_id: str) -> Optional[datetime]:
        text = await self.sidecars.read_text(upload_id, fields.EXPIRATION)
        if not text:
            return None
        try:
            return datetime.fromisoformat(text.strip())
        except ValueError as e:
            raise StorageIOError(f"Corrupt expiration record for upload {upload_id}: {text!r}") from e

    async def get_upload_length(self, upload_id: str) -> Optional[int]:
        """Get the declared upload length, or None if it has not been set."""
        text = await self.sidecars.read_text(upload_id, fields.UPLOAD_LENGTH)
        return _parse_offset(upload_id, fields.UPLOAD_LENGTH, text)

    async def set_upload_length(self, upload_id: str, upload_length: int):
        """Store the length of an upload created without one.

        Setting the length that is already stored is a no-op. A different value,
        or one shorter than the bytes already received, raises
        UploadLengthConflictError.
        """
        if upload_length < 0:
            raise ValueError("Upload length must not be negative")

        current = await self.get_upload_length(upload_id)
        if current is not None:
            if current != upload_length:
                raise UploadLengthConflictError(
                    f"Upload {upload_id} already has length {current}, got {upload_length}"
                )
            return

        offset = await self.get_upload_offset(upload_id)
        if upload_length < offset:
            raise UploadLengthConflictError(
                f"Upload {upload_id} already holds {offset} bytes, more than length {upload_length}"
            )

        await self.sidecars.write_text(upload_id, fields.UPLOAD_LENGTH, upload_length)
        logger.info(f"Upload length for {upload_id} set to {upload_length}")

    async def get_upload_metadata(self, upload_id: str) -> Optional[str]:
        return await self.sidecars.read_text(upload_id, fields.METADATA)

    async def file_exists(self, upload_id: str) -> bool:
        return await aiofiles.os.path.isfile(self.get_file_path(upload_id))

    async def get_upload_offset(self, upload_id: str) -> int:
        """Number of bytes received so far, i.e. the size of the data file."""
        try:
            stat = await aiofiles.os.stat(self.get_file_path(upload_id))
        except OSError as e:
            raise StorageIOError(f"Could not stat data file for upload {upload_id}: {e}") from e
        return stat.st_size

    async def get_chunk_status(self, upload_id: str) -> ChunkStatus:
        """Where the last append attempt started and whether it finished cleanly."""
        text = await self.sidecars.read_text(upload_id, fields.CHUNK_START)
        start = _parse_offset(upload_id, fields.CHUNK_START, text)
        complete = await self.sidecars.exists(upload_id, fields.CHUNK_COMPLETE)
        return ChunkStatus(start=start, complete=complete)

    async def append_data(
        self,
        upload_id: str,
        source: ByteSource,
        cancellation: Optional[CancellationToken] = None,
    ) -> int:
        """Append everything the source produces to the upload's data file.

        Returns:
            int: Number of bytes appended by this call. Zero when the upload was
            already complete.

        Raises:
            UploadOverflowError: if the data would exceed the declared length.
            SourceReadError: if reading from the source fails.
            StorageIOError: if the data file or a sidecar record cannot be written.
        """
        cancellation = cancellation or CancellationToken()

        upload_length = await self.get_upload_length(upload_id)
        if upload_length is None:
            logger.warning(f"Upload {upload_id} has no upload length, appending without overflow check")

        file_path = self.get_file_path(upload_id)
        write_capacity = max(self.write_buffer_size, self.read_buffer_size)

        with self._buffer_pool.lease(self.read_buffer_size) as read_buffer, \
                self._buffer_pool.lease(write_capacity) as write_buffer:
            try:
                async with aiofiles.open(file_path, 'ab') as disk_file:
                    position = (await aiofiles.os.stat(file_path)).st_size
                    if position == upload_length:
                        logger.info(f"Upload {upload_id} is already complete")
                        return 0

                    await self._initialize_chunk(upload_id, position)
                    return await self._copy_to_disk(
                        upload_id,
                        source,
                        cancellation,
                        disk_file,
                        memoryview(read_buffer)[:self.read_buffer_size],
                        memoryview(write_buffer),
                        position,
                        upload_length,
                    )
            except OSError as e:
                raise StorageIOError(f"Could not append to upload {upload_id}: {e}") from e

    async def _copy_to_disk(self, upload_id, source, cancellation, disk_file,
                            read_view, write_view, position, upload_length) -> int:
        bytes_written = 0
        buffered = 0
        disconnected = False

        try:
            while True:
                if cancellation.cancelled:
                    disconnected = True
                    break

                bytes_read = await self._read_block(source, read_view)
                disconnected = cancellation.cancelled
                if bytes_read == 0:
                    break

                position += bytes_read
                if upload_length is not None and position > upload_length:
                    logger.warning(f"Upload {upload_id} overflowed: {position} > {upload_length}")
                    raise UploadOverflowError(upload_id, position, upload_length)

                # Can we fit the read data into the write buffer? If not flush it now.
                if buffered and buffered + bytes_read > self.write_buffer_size:
                    await self._flush(disk_file, write_view[:buffered])
                    buffered = 0

                write_view[buffered:buffered + bytes_read] = read_view[:bytes_read]
                buffered += bytes_read
                bytes_written += bytes_read

                if disconnected:
                    break
        except (UploadOverflowError, SourceReadError):
            # Bytes accepted before the failure are still valid upload data
            if buffered:
                await self._flush(disk_file, write_view[:buffered])
            raise

        if buffered:
            await self._flush(disk_file, write_view[:buffered])

        if disconnected:
            logger.info(f"Client disconnected during upload {upload_id} after {bytes_written} bytes")
        else:
            await self._mark_chunk_complete(upload_id)
            logger.debug(f"Appended {bytes_written} bytes to upload {upload_id}")

        return bytes_written

    @staticmethod
    async def _read_block(source: ByteSource, read_view: memoryview) -> int:
        try:
            block = await source.read(len(read_view))
        except Exception as e:
            raise SourceReadError(f"Error reading upload data: {e}") from e

        if len(block) > len(read_view):
            raise SourceReadError(
                f"Source returned {len(block)} bytes when at most {len(read_view)} were requested"
            )
        read_view[:len(block)] = block
        return len(block)

    @staticmethod
    async def _flush(disk_file, data: memoryview):
        await disk_file.write(data)
        await disk_file.flush()
        await asyncio.to_thread(os.fsync, disk_file.fileno())

    async def _initialize_chunk(self, upload_id: str, position: int):
        await self.sidecars.delete(upload_id, fields.CHUNK_COMPLETE)
        await self.sidecars.write_text(upload_id, fields.CHUNK_START, position)

    async def _mark_chunk_complete(self, upload_id: str):
        await self.sidecars.write_text(upload_id, fields.CHUNK_COMPLETE, "1")

    async def verify_checksum(self, upload_id: str, algorithm: str, checksum: bytes) -> bool:
        """Check the last appended chunk against a client supplied digest.

        An interrupted chunk cannot be verified. In that case, or when the digest
        doesn't match, the data file is truncated back to where the chunk started.
        """
        algorithm = algorithm.lower()
        if algorithm not in CHECKSUM_ALGORITHMS:
            raise ValueError(f"Unsupported checksum algorithm: {algorithm}")

        status = await self.get_chunk_status(upload_id)
        chunk_start = status.start or 0
        file_path = self.get_file_path(upload_id)

        if not status.complete:
            logger.warning(f"Last chunk of upload {upload_id} is incomplete, discarding it")
            await self._truncate(file_path, chunk_start)
            return False

        digest = hashlib.new(algorithm)
        try:
            async with aiofiles.open(file_path, 'rb') as f:
                await f.seek(chunk_start)
                while block := await f.read(self.read_buffer_size):
                    digest.update(block)
        except OSError as e:
            raise StorageIOError(f"Could not read upload {upload_id}: {e}") from e

        valid = hmac.compare_digest(digest.digest(), checksum)
        if not valid:
            logger.warning(f"Checksum mismatch for upload {upload_id}, truncating to {chunk_start}")
            await self._truncate(file_path, chunk_start)
        return valid

    @staticmethod
    async def _truncate(file_path: Path, size: int):
        try:
            async with aiofiles.open(file_path, 'r+b') as f:
                await f.truncate(size)
        except OSError as e:
            raise StorageIOError(f"Could not truncate {file_path.name}: {e}") from e
