import base64
import binascii
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from upload_server import config
from upload_server.app.models.upload import UploadStatus
from upload_server.app.services.byte_source import CancellationToken, RequestByteSource
from upload_server.app.services.errors import (
    IdAllocationError,
    InvalidMetadataError,
    SourceReadError,
    StorageIOError,
    UploadLengthConflictError,
    UploadOverflowError,
)
from upload_server.app.services.metadata import parse_metadata
from upload_server.app.services.upload_locks import UploadLocks
from upload_server.app.services.upload_store import CHECKSUM_ALGORITHMS, DiskUploadStore
from upload_server.logger_config import setup_logger

# Upload storage path
UPLOAD_DIR = Path(config.UPLOAD_DIR)

# Logger setup
logger = setup_logger()

TUS_HEADERS = {"Tus-Resumable": config.TUS_VERSION}
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"
CHECKSUM_MISMATCH = 460


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create and initialize upload store
    app.state.upload_store = DiskUploadStore(UPLOAD_DIR)
    await app.state.upload_store.initialize()
    app.state.upload_locks = UploadLocks()
    yield


# Create FastAPI app with lifespan
app = FastAPI(title="Upload Server", lifespan=lifespan)


@app.exception_handler(StorageIOError)
async def storage_error_handler(request: Request, exc: StorageIOError):
    logger.error(f"Storage error on {request.method} {request.url.path}: {str(exc)}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Upload storage error"})


def is_valid_id(upload_id: str) -> bool:
    """Check if the upload ID is safe to use as a file name."""
    if not upload_id or len(upload_id) > config.MAX_ID_LENGTH:
        return False

    # Check if id contains only allowed characters: a-z, A-Z, 0-9, dot, underscore, minus
    pattern = r'^[a-zA-Z0-9._-]+$'
    return bool(re.match(pattern, upload_id)) and upload_id not in (".", "..")


def validate_upload_id(upload_id: str):
    """Validate the upload ID and raise HTTPException if invalid."""
    if not is_valid_id(upload_id):
        raise HTTPException(status_code=400, detail="Invalid upload ID format")


def parse_length_header(headers, name: str) -> Optional[int]:
    """Read a non-negative integer header, None if it is absent."""
    value = headers.get(name)
    if value is None:
        return None
    try:
        number = int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} header")
    if number < 0:
        raise HTTPException(status_code=400, detail=f"Invalid {name} header")
    return number


def parse_checksum_header(value: Optional[str]) -> Optional[Tuple[str, bytes]]:
    """Split an Upload-Checksum header into algorithm and raw digest."""
    if value is None:
        return None
    try:
        algorithm, encoded = value.strip().split(" ", 1)
        digest = base64.b64decode(encoded, validate=True)
    except (ValueError, binascii.Error):
        raise HTTPException(status_code=400, detail="Invalid Upload-Checksum header")
    if algorithm.lower() not in CHECKSUM_ALGORITHMS:
        raise HTTPException(status_code=400, detail=f"Unsupported checksum algorithm: {algorithm}")
    return algorithm, digest


async def slide_expiration(store: DiskUploadStore, upload_id: str) -> datetime:
    expires = datetime.now(timezone.utc) + timedelta(seconds=config.UPLOAD_EXPIRATION_SECONDS)
    await store.set_expiration(upload_id, expires)
    return expires


async def ensure_upload_exists(store: DiskUploadStore, upload_id: str):
    validate_upload_id(upload_id)
    if not await store.file_exists(upload_id):
        raise HTTPException(status_code=404, detail=f"Upload {upload_id} not found")


@app.options("/files")
async def discover():
    """Advertise the supported protocol version and extensions."""
    headers = {
        **TUS_HEADERS,
        "Tus-Version": config.TUS_VERSION,
        "Tus-Extension": config.TUS_EXTENSIONS,
        "Tus-Checksum-Algorithm": config.TUS_CHECKSUM_ALGORITHMS,
    }
    return Response(status_code=204, headers=headers)


@app.post("/files")
async def create_upload(request: Request):
    """Create a new upload.

    The client either declares the total size with Upload-Length or sends
    Upload-Defer-Length: 1 and supplies the length with a later PATCH.
    """
    store: DiskUploadStore = request.app.state.upload_store

    upload_length = parse_length_header(request.headers, "upload-length")
    defer_length = request.headers.get("upload-defer-length")

    if upload_length is None and defer_length != "1":
        raise HTTPException(status_code=400, detail="Missing Upload-Length or Upload-Defer-Length header")
    if upload_length is not None and defer_length is not None:
        raise HTTPException(status_code=400, detail="Upload-Length and Upload-Defer-Length are mutually exclusive")

    metadata = request.headers.get("upload-metadata", "")
    try:
        parse_metadata(metadata)
    except InvalidMetadataError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        upload_id = await store.create_upload(upload_length, metadata)
        expires = await slide_expiration(store, upload_id)
    except (IdAllocationError, StorageIOError) as e:
        logger.error(f"Error creating upload: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Could not create upload")

    headers = {
        **TUS_HEADERS,
        "Location": f"/files/{upload_id}",
        "Upload-Expires": format_datetime(expires, usegmt=True),
    }
    return Response(status_code=201, headers=headers)


@app.head("/files/{upload_id}")
async def get_offset(upload_id: str, request: Request):
    """Report how many bytes of the upload have been received."""
    store: DiskUploadStore = request.app.state.upload_store
    await ensure_upload_exists(store, upload_id)

    headers: Dict[str, str] = {
        **TUS_HEADERS,
        "Cache-Control": "no-store",
        "Upload-Offset": str(await store.get_upload_offset(upload_id)),
    }

    upload_length = await store.get_upload_length(upload_id)
    if upload_length is None:
        headers["Upload-Defer-Length"] = "1"
    else:
        headers["Upload-Length"] = str(upload_length)

    metadata = await store.get_upload_metadata(upload_id)
    if metadata:
        headers["Upload-Metadata"] = metadata

    return Response(status_code=200, headers=headers)


@app.patch("/files/{upload_id}")
async def append_chunk(upload_id: str, request: Request):
    """Append the request body to the upload at the offset the client expects."""
    store: DiskUploadStore = request.app.state.upload_store
    locks: UploadLocks = request.app.state.upload_locks

    if request.headers.get("content-type") != OFFSET_CONTENT_TYPE:
        raise HTTPException(status_code=415, detail=f"Content-Type must be {OFFSET_CONTENT_TYPE}")

    client_offset = parse_length_header(request.headers, "upload-offset")
    if client_offset is None:
        raise HTTPException(status_code=400, detail="Missing Upload-Offset header")

    upload_length = parse_length_header(request.headers, "upload-length")
    checksum = parse_checksum_header(request.headers.get("upload-checksum"))

    logger.info(f"Receiving chunk for upload {upload_id} at offset {client_offset}")

    async with locks.hold(upload_id):
        await ensure_upload_exists(store, upload_id)

        if upload_length is not None:
            try:
                await store.set_upload_length(upload_id, upload_length)
            except UploadLengthConflictError as e:
                raise HTTPException(status_code=400, detail=str(e))

        offset = await store.get_upload_offset(upload_id)
        if offset != client_offset:
            raise HTTPException(
                status_code=409,
                detail=f"Upload-Offset {client_offset} does not match current offset {offset}",
            )

        cancellation = CancellationToken()
        source = RequestByteSource(request, cancellation)
        try:
            bytes_written = await store.append_data(upload_id, source, cancellation)
        except UploadOverflowError as e:
            raise HTTPException(status_code=413, detail=str(e))
        except SourceReadError as e:
            logger.error(f"Error reading chunk for upload {upload_id}: {str(e)}")
            raise HTTPException(status_code=400, detail="Error reading request body")
        except StorageIOError as e:
            logger.error(f"Error appending to upload {upload_id}: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail="Error writing upload data")

        # A completed upload accepts no bytes, so there is no new chunk to verify
        if checksum is not None and bytes_written:
            algorithm, digest = checksum
            if not await store.verify_checksum(upload_id, algorithm, digest):
                raise HTTPException(status_code=CHECKSUM_MISMATCH, detail="Checksum Mismatch")

        expires = await slide_expiration(store, upload_id)

    headers = {
        **TUS_HEADERS,
        "Upload-Offset": str(offset + bytes_written),
        "Upload-Expires": format_datetime(expires, usegmt=True),
    }
    return Response(status_code=204, headers=headers)


@app.get("/files/{upload_id}/status", response_model=UploadStatus)
async def get_status(upload_id: str, request: Request):
    """Summarize an upload's sidecar state."""
    store: DiskUploadStore = request.app.state.upload_store
    await ensure_upload_exists(store, upload_id)

    offset = await store.get_upload_offset(upload_id)
    upload_length = await store.get_upload_length(upload_id)
    chunk = await store.get_chunk_status(upload_id)

    try:
        metadata = parse_metadata(await store.get_upload_metadata(upload_id) or "")
    except InvalidMetadataError:
        metadata = {}

    return UploadStatus(
        upload_id=upload_id,
        offset=offset,
        upload_length=upload_length,
        metadata=metadata,
        expires=await store.get_expiration(upload_id),
        chunk_start=chunk.start,
        chunk_complete=chunk.complete,
        is_complete=upload_length is not None and offset == upload_length,
    )


if __name__ == "__main__":
    logger.info("Starting Upload Server...")
    logger.info(f"Upload directory: {UPLOAD_DIR}")
    logger.info(f"Read buffer: {config.READ_BUFFER_SIZE} bytes, write buffer: {config.WRITE_BUFFER_SIZE} bytes")
    uvicorn.run(app, host="0.0.0.0", port=8000)
