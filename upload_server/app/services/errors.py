"""Errors raised by the upload store."""


class UploadStoreError(Exception):
    """Base class for upload store failures."""


class IdAllocationError(UploadStoreError):
    """The id provider could not allocate an upload id."""


class StorageIOError(UploadStoreError):
    """A data file or sidecar record could not be opened, read, written or flushed."""


class UploadOverflowError(UploadStoreError, OverflowError):
    """The client sent more bytes than the declared upload length."""

    def __init__(self, upload_id: str, position: int, upload_length: int):
        self.upload_id = upload_id
        self.position = position
        self.upload_length = upload_length
        super().__init__(
            f"Stream contains more data than the file's upload length. "
            f"Stream data: {position}, upload length: {upload_length}."
        )


class SourceReadError(UploadStoreError):
    """Reading from the inbound byte source failed."""


class UploadLengthConflictError(UploadStoreError):
    """A different upload length has already been stored for the upload."""


class InvalidMetadataError(UploadStoreError, ValueError):
    """Upload-Metadata text is not in the key/base64-value format."""
