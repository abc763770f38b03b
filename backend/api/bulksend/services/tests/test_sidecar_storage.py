"""Tests for SidecarStorageBackend."""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from google.api_core import exceptions as gcs_exceptions

from bulksend.errors import (
    ConfigurationError,
    InvalidKeyError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
)
from bulksend.services.storage import SidecarStorageBackend
from bulksend.services.storage.sidecar import parse_object_path, sidecar_credentials_info


@pytest.fixture
def gcs_client():
    return MagicMock()


@pytest.fixture
def blob(gcs_client):
    return gcs_client.bucket.return_value.blob.return_value


def make_storage(gcs_client, handler=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return SidecarStorageBackend(
        "/replit-bucket/.private",
        sidecar_endpoint="http://sidecar.local",
        client=gcs_client,
        http_client=http_client,
    )


def test_parse_object_path():
    assert parse_object_path("/bucket/dir/file.pdf") == ("bucket", "dir/file.pdf")
    assert parse_object_path("bucket/file.pdf") == ("bucket", "file.pdf")
    with pytest.raises(InvalidKeyError):
        parse_object_path("/bucket")


def test_requires_private_object_dir():
    with pytest.raises(ConfigurationError, match="PRIVATE_OBJECT_DIR"):
        SidecarStorageBackend("")


def test_credentials_point_at_sidecar():
    info = sidecar_credentials_info("http://sidecar.local")

    assert info["type"] == "external_account"
    assert info["token_url"] == "http://sidecar.local/token"
    assert info["credential_source"]["url"] == "http://sidecar.local/credential"


@pytest.mark.asyncio
async def test_upload_returns_full_object_path(gcs_client, blob):
    storage = make_storage(gcs_client)

    key = await storage.upload_buffer(b"%PDF", "documents/abc/unsigned.pdf", "application/pdf")

    assert key == "/replit-bucket/.private/documents/abc/unsigned.pdf"
    gcs_client.bucket.assert_called_with("replit-bucket")
    gcs_client.bucket.return_value.blob.assert_called_with(".private/documents/abc/unsigned.pdf")
    blob.upload_from_string.assert_called_once_with(b"%PDF", content_type="application/pdf")
    assert storage.get_private_object_dir() == "/replit-bucket/.private"


@pytest.mark.asyncio
async def test_download_absolute_path_is_used_as_is(gcs_client, blob):
    blob.download_as_bytes.return_value = b"%PDF"
    storage = make_storage(gcs_client)

    data = await storage.download_buffer("/other-bucket/uploads/source.pdf")

    assert data == b"%PDF"
    gcs_client.bucket.assert_called_with("other-bucket")
    gcs_client.bucket.return_value.blob.assert_called_with("uploads/source.pdf")


@pytest.mark.asyncio
async def test_download_missing_object(gcs_client, blob):
    blob.download_as_bytes.side_effect = gcs_exceptions.NotFound("gone")
    storage = make_storage(gcs_client)

    with pytest.raises(NotFoundError):
        await storage.download_buffer("missing.pdf")


@pytest.mark.asyncio
async def test_server_error_is_transient(gcs_client, blob):
    blob.upload_from_string.side_effect = gcs_exceptions.ServiceUnavailable("busy")
    storage = make_storage(gcs_client)

    with pytest.raises(TransientProviderError):
        await storage.upload_buffer(b"%PDF", "doc.pdf", "application/pdf")


@pytest.mark.asyncio
async def test_delete_missing_object_is_noop(gcs_client, blob):
    blob.delete.side_effect = gcs_exceptions.NotFound("gone")
    storage = make_storage(gcs_client)

    await storage.delete("missing.pdf")

    blob.delete.assert_called_once()


@pytest.mark.asyncio
async def test_exists(gcs_client, blob):
    blob.exists.return_value = False
    storage = make_storage(gcs_client)

    assert await storage.exists("doc.pdf") is False


@pytest.mark.asyncio
async def test_signed_url_requested_from_sidecar(gcs_client):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"signed_url": "https://storage.example.com/signed"})

    storage = make_storage(gcs_client, handler)

    url = await storage.get_signed_download_url("doc.pdf", 900)

    assert url == "https://storage.example.com/signed"
    assert requests[0].url == "http://sidecar.local/object-storage/signed-object-url"
    body = json.loads(requests[0].content)
    assert body["bucket_name"] == "replit-bucket"
    assert body["object_name"] == ".private/doc.pdf"
    assert body["method"] == "GET"
    assert "expires_at" in body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"), [(500, TransientProviderError), (403, ProviderError)]
)
async def test_signed_url_failures(gcs_client, status_code, error):
    storage = make_storage(gcs_client, lambda request: httpx.Response(status_code))

    with pytest.raises(error):
        await storage.get_signed_download_url("doc.pdf", 900)


@pytest.mark.asyncio
async def test_signed_url_sidecar_unreachable(gcs_client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    storage = make_storage(gcs_client, handler)

    with pytest.raises(TransientProviderError):
        await storage.get_signed_download_url("doc.pdf", 900)
