import pytest

from upload_server.app.services.errors import StorageIOError
from upload_server.app.services.sidecar_store import (
    CHUNK_COMPLETE,
    CHUNK_START,
    METADATA,
    SidecarStore,
)


@pytest.fixture
def sidecars(tmp_path):
    return SidecarStore(tmp_path)


@pytest.mark.asyncio
async def test_write_then_read(sidecars, tmp_path):
    await sidecars.write_text("upload1", CHUNK_START, 1024)

    assert await sidecars.read_text("upload1", CHUNK_START) == "1024"
    assert (tmp_path / "upload1.chunkstart").read_text() == "1024"


@pytest.mark.asyncio
async def test_write_replaces_previous_contents(sidecars):
    await sidecars.write_text("upload1", METADATA, "a much longer first value")
    await sidecars.write_text("upload1", METADATA, "short")

    assert await sidecars.read_text("upload1", METADATA) == "short"


@pytest.mark.asyncio
async def test_read_missing_record_returns_none(sidecars):
    assert await sidecars.read_text("upload1", METADATA) is None


@pytest.mark.asyncio
async def test_create_empty_truncates(sidecars):
    await sidecars.write_text("upload1", CHUNK_START, 42)
    await sidecars.create_empty("upload1", CHUNK_START)

    assert await sidecars.read_text("upload1", CHUNK_START) == ""
    assert await sidecars.exists("upload1", CHUNK_START)


@pytest.mark.asyncio
async def test_delete(sidecars):
    await sidecars.create_empty("upload1", CHUNK_COMPLETE)
    assert await sidecars.exists("upload1", CHUNK_COMPLETE)

    await sidecars.delete("upload1", CHUNK_COMPLETE)
    assert not await sidecars.exists("upload1", CHUNK_COMPLETE)

    # Deleting again is a no-op
    await sidecars.delete("upload1", CHUNK_COMPLETE)


@pytest.mark.asyncio
async def test_records_are_scoped_per_upload(sidecars):
    await sidecars.write_text("upload1", METADATA, "first")
    await sidecars.write_text("upload2", METADATA, "second")

    assert await sidecars.read_text("upload1", METADATA) == "first"
    assert await sidecars.read_text("upload2", METADATA) == "second"


@pytest.mark.asyncio
async def test_write_into_missing_directory_fails(tmp_path):
    sidecars = SidecarStore(tmp_path / "missing")

    with pytest.raises(StorageIOError):
        await sidecars.write_text("upload1", METADATA, "value")
    with pytest.raises(StorageIOError):
        await sidecars.create_empty("upload1", CHUNK_COMPLETE)


def test_unknown_field_is_rejected(sidecars):
    with pytest.raises(ValueError):
        sidecars.get_record_path("upload1", "headers")


@pytest.mark.asyncio
async def test_text_is_stored_verbatim(sidecars, tmp_path):
    value = "a\r\nb\rc\nd ü"
    await sidecars.write_text("upload1", METADATA, value)

    assert await sidecars.read_text("upload1", METADATA) == value
    assert (tmp_path / "upload1.metadata").read_bytes() == value.encode("utf-8")
