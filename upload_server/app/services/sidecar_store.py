from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

from upload_server.app.services.errors import StorageIOError
from upload_server.logger_config import setup_logger

logger = setup_logger()

CHUNK_COMPLETE = "chunkcomplete"
CHUNK_START = "chunkstart"
EXPIRATION = "expiration"
UPLOAD_LENGTH = "uploadlength"
METADATA = "metadata"

FIELDS = (CHUNK_COMPLETE, CHUNK_START, EXPIRATION, UPLOAD_LENGTH, METADATA)


class SidecarStore:
    """Small text records stored next to an upload's data file.

    Every record lives in its own file named ``{upload_id}.{field}``. Nothing is
    cached, so each call reflects what is currently on disk. A missing record is
    a valid "unset" state rather than an error.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def get_record_path(self, upload_id: str, field: str) -> Path:
        """Get the path of the record holding ``field`` for an upload."""
        if field not in FIELDS:
            raise ValueError(f"Unknown sidecar field: {field}")
        return self.directory / f"{upload_id}.{field}"

    async def create_empty(self, upload_id: str, field: str):
        """Create the record, truncating it to zero length if it already exists."""
        path = self.get_record_path(upload_id, field)
        try:
            async with aiofiles.open(path, 'w'):
                pass
        except OSError as e:
            raise StorageIOError(f"Could not create {path.name}: {e}") from e

    async def write_text(self, upload_id: str, field: str, value: Union[str, int]):
        """Replace the record's contents with the text form of ``value``."""
        path = self.get_record_path(upload_id, field)
        try:
            async with aiofiles.open(path, 'w', encoding='utf-8', newline='') as f:
                await f.write(str(value))
        except OSError as e:
            raise StorageIOError(f"Could not write {path.name}: {e}") from e

    async def read_text(self, upload_id: str, field: str) -> Optional[str]:
        """Read the record's contents, or None when the record does not exist."""
        path = self.get_record_path(upload_id, field)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8', newline='') as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(f"Could not read {path.name}: {e}") from e

    async def delete(self, upload_id: str, field: str):
        """Remove the record. Removing a missing record is a no-op."""
        path = self.get_record_path(upload_id, field)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError(f"Could not delete {path.name}: {e}") from e

    async def exists(self, upload_id: str, field: str) -> bool:
        return await aiofiles.os.path.exists(self.get_record_path(upload_id, field))
