import base64
import hashlib
import os

import pytest
from fastapi.testclient import TestClient

from upload_server.app.services.upload_locks import UploadLocks
from upload_server.app.services.upload_store import DiskUploadStore
from upload_server.main import app

# Create a test client
client = TestClient(app)

PATCH_HEADERS = {"Content-Type": "application/offset+octet-stream", "Tus-Resumable": "1.0.0"}


@pytest.fixture(autouse=True)
def upload_store(tmp_path):
    """Attach a store backed by an isolated directory to the app."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()

    store = DiskUploadStore(upload_dir, read_buffer_size=16, write_buffer_size=64)
    app.state.upload_store = store
    app.state.upload_locks = UploadLocks()
    yield store


def create_upload(length=None, metadata=None):
    headers = {"Tus-Resumable": "1.0.0"}
    if length is None:
        headers["Upload-Defer-Length"] = "1"
    else:
        headers["Upload-Length"] = str(length)
    if metadata is not None:
        headers["Upload-Metadata"] = metadata

    response = client.post("/files", headers=headers)
    assert response.status_code == 201
    return response.headers["location"].rsplit("/", 1)[-1]


def patch(upload_id, content, offset, **extra_headers):
    headers = {**PATCH_HEADERS, "Upload-Offset": str(offset), **extra_headers}
    return client.patch(f"/files/{upload_id}", content=content, headers=headers)


def test_options_advertises_extensions():
    response = client.options("/files")

    assert response.status_code == 204
    assert response.headers["tus-version"] == "1.0.0"
    assert "creation-defer-length" in response.headers["tus-extension"]
    assert "sha1" in response.headers["tus-checksum-algorithm"]


def test_create_and_head():
    upload_id = create_upload(10, "filename ZGF0YS5iaW4=")

    response = client.head(f"/files/{upload_id}")
    assert response.status_code == 200
    assert response.headers["upload-offset"] == "0"
    assert response.headers["upload-length"] == "10"
    assert response.headers["upload-metadata"] == "filename ZGF0YS5iaW4="
    assert response.headers["cache-control"] == "no-store"


def test_create_sets_expiration(upload_store):
    response = client.post("/files", headers={"Upload-Length": "10"})
    upload_id = response.headers["location"].rsplit("/", 1)[-1]

    assert "upload-expires" in response.headers
    assert (upload_store.directory / f"{upload_id}.expiration").read_text() != ""


def test_create_requires_length():
    response = client.post("/files")
    assert response.status_code == 400
    assert "Upload-Length" in response.text

    response = client.post("/files", headers={"Upload-Length": "-1"})
    assert response.status_code == 400

    response = client.post("/files", headers={"Upload-Length": "10", "Upload-Defer-Length": "1"})
    assert response.status_code == 400


def test_create_rejects_invalid_metadata():
    response = client.post("/files", headers={"Upload-Length": "10", "Upload-Metadata": "filename %%%"})
    assert response.status_code == 400


def test_upload_in_two_chunks():
    upload_id = create_upload(10)

    response = patch(upload_id, b"abcde", 0)
    assert response.status_code == 204
    assert response.headers["upload-offset"] == "5"

    response = patch(upload_id, b"fghij", 5)
    assert response.status_code == 204
    assert response.headers["upload-offset"] == "10"

    response = client.get(f"/files/{upload_id}/status")
    assert response.status_code == 200
    status = response.json()
    assert status["offset"] == 10
    assert status["is_complete"] is True
    assert status["chunk_start"] == 5
    assert status["chunk_complete"] is True


def test_large_upload_is_byte_identical(upload_store):
    content = os.urandom(5000)
    upload_id = create_upload(len(content))

    offset = 0
    for size in (1234, 2000, 1766):
        response = patch(upload_id, content[offset:offset + size], offset)
        assert response.status_code == 204
        offset += size

    assert upload_store.get_file_path(upload_id).read_bytes() == content


def test_patch_offset_mismatch():
    upload_id = create_upload(10)
    patch(upload_id, b"abc", 0)

    response = patch(upload_id, b"def", 0)
    assert response.status_code == 409


def test_patch_requires_offset_content_type():
    upload_id = create_upload(10)

    response = client.patch(
        f"/files/{upload_id}",
        content=b"abc",
        headers={"Content-Type": "application/octet-stream", "Upload-Offset": "0"},
    )
    assert response.status_code == 415


def test_patch_missing_offset():
    upload_id = create_upload(10)

    response = client.patch(f"/files/{upload_id}", content=b"abc", headers=PATCH_HEADERS)
    assert response.status_code == 400
    assert "Upload-Offset" in response.text


def test_patch_overflow(upload_store):
    upload_id = create_upload(10)

    response = patch(upload_id, b"x" * 50, 0)
    assert response.status_code == 413

    assert len(upload_store.get_file_path(upload_id).read_bytes()) <= 10


def test_unknown_and_invalid_ids():
    assert client.head("/files/doesnotexist").status_code == 404
    assert patch("doesnotexist", b"abc", 0).status_code == 404
    assert client.get("/files/doesnotexist/status").status_code == 404

    response = patch("invalid@id", b"abc", 0)
    assert response.status_code == 400
    assert "Invalid upload ID format" in response.text


def test_deferred_length():
    upload_id = create_upload()

    response = client.head(f"/files/{upload_id}")
    assert response.headers["upload-defer-length"] == "1"
    assert "upload-length" not in response.headers

    response = patch(upload_id, b"abc", 0, **{"Upload-Length": "6"})
    assert response.status_code == 204

    response = client.head(f"/files/{upload_id}")
    assert response.headers["upload-length"] == "6"

    response = patch(upload_id, b"def", 3, **{"Upload-Length": "7"})
    assert response.status_code == 400


def test_checksum_match():
    upload_id = create_upload(10)
    digest = base64.b64encode(hashlib.sha1(b"abcde").digest()).decode()

    response = patch(upload_id, b"abcde", 0, **{"Upload-Checksum": f"sha1 {digest}"})
    assert response.status_code == 204
    assert response.headers["upload-offset"] == "5"


def test_checksum_mismatch_discards_chunk():
    upload_id = create_upload(10)
    patch(upload_id, b"abc", 0)
    digest = base64.b64encode(hashlib.sha1(b"something else").digest()).decode()

    response = patch(upload_id, b"def", 3, **{"Upload-Checksum": f"sha1 {digest}"})
    assert response.status_code == 460

    response = client.head(f"/files/{upload_id}")
    assert response.headers["upload-offset"] == "3"


def test_checksum_unsupported_algorithm():
    upload_id = create_upload(10)

    response = patch(upload_id, b"abc", 0, **{"Upload-Checksum": "crc32 AAAAAA=="})
    assert response.status_code == 400


def test_status_decodes_metadata():
    upload_id = create_upload(4, "filename ZGF0YS5iaW4=,empty")

    status = client.get(f"/files/{upload_id}/status").json()

    assert status["metadata"] == {"filename": "data.bin", "empty": ""}
    assert status["upload_length"] == 4
    assert status["is_complete"] is False
    assert status["expires"] is not None


def test_deferred_length_shorter_than_received():
    upload_id = create_upload()
    patch(upload_id, b"abcdef", 0)

    response = patch(upload_id, b"", 6, **{"Upload-Length": "3"})
    assert response.status_code == 400

    response = client.head(f"/files/{upload_id}")
    assert response.headers["upload-offset"] == "6"
    assert response.headers["upload-defer-length"] == "1"


def test_corrupt_record_returns_server_error(upload_store):
    upload_id = create_upload(10)
    (upload_store.directory / f"{upload_id}.uploadlength").write_text("not a number")

    response = client.get(f"/files/{upload_id}/status")
    assert response.status_code == 500
    assert response.json()["detail"] == "Upload storage error"
