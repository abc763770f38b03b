"""Object storage authenticated through a local credential sidecar.

The sidecar hands out short-lived tokens through a workload-identity style
exchange, so no static key exists on this host. Two consequences:

    - the Cloud Storage client is built from ``external_account``
      credentials pointing at the sidecar's token and credential endpoints
    - signed URLs cannot be produced locally and are requested from the
      sidecar over HTTP instead

Objects are addressed as ``/bucket/object/name`` strings. New uploads go
under ``private_object_dir`` (itself ``/bucket/dir``), and the full path is
returned as the storage key.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import httpx
from fastapi.concurrency import run_in_threadpool
from google.api_core import exceptions as gcs_exceptions
from google.auth import exceptions as auth_exceptions
from google.auth import identity_pool
from google.cloud import storage as gcs

from ...config import Settings
from ...errors import (
    ConfigurationError,
    InvalidKeyError,
    NotFoundError,
    ProviderError,
    StorageError,
    TransientProviderError,
)
from .protocol import validate_key

if TYPE_CHECKING:
    from google.cloud.storage import Blob

logger = logging.getLogger(__name__)

SIDECAR_AUDIENCE = "replit"
SIDECAR_TIMEOUT = 10.0


def parse_object_path(path: str) -> tuple[str, str]:
    """Split ``/bucket/object/name`` into ``(bucket, object_name)``.

    Raises:
        InvalidKeyError: If the path has no object part.
    """
    if not path.startswith("/"):
        path = f"/{path}"
    parts = path.split("/")
    if len(parts) < 3 or not parts[1] or not "/".join(parts[2:]):
        raise InvalidKeyError(f"Invalid object path (expected /bucket/object): {path}")
    return parts[1], "/".join(parts[2:])


def sidecar_credentials_info(endpoint: str) -> dict[str, object]:
    """External-account credential description for the local sidecar."""
    return {
        "type": "external_account",
        "audience": SIDECAR_AUDIENCE,
        "subject_token_type": "access_token",
        "token_url": f"{endpoint}/token",
        "credential_source": {
            "url": f"{endpoint}/credential",
            "format": {"type": "json", "subject_token_field_name": "access_token"},
        },
        "universe_domain": "googleapis.com",
    }


class SidecarStorageBackend:
    """Cloud Storage backend using sidecar-issued credentials."""

    def __init__(
        self,
        private_object_dir: str,
        sidecar_endpoint: str = "http://127.0.0.1:1106",
        client: gcs.Client | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not private_object_dir:
            raise ConfigurationError(
                "PRIVATE_OBJECT_DIR is required for sidecar object storage"
            )
        # Fails early on a directory without a bucket component
        parse_object_path(f"{private_object_dir.rstrip('/')}/object")

        self.private_object_dir = private_object_dir.rstrip("/")
        self.sidecar_endpoint = sidecar_endpoint.rstrip("/")
        self._client = client
        self._http = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> SidecarStorageBackend:
        return cls(settings.private_object_dir, settings.sidecar_endpoint)

    @property
    def client(self) -> gcs.Client:
        """Get or create the Cloud Storage client."""
        if self._client is None:
            credentials = identity_pool.Credentials.from_info(
                sidecar_credentials_info(self.sidecar_endpoint)
            )
            self._client = gcs.Client(project=None, credentials=credentials)
        return self._client

    def get_private_object_dir(self) -> str:
        return self.private_object_dir

    def resolve_path(self, key: str) -> str:
        """Full object path for a key; absolute paths are taken as-is."""
        if key.startswith("/"):
            return key
        return f"{self.private_object_dir}/{validate_key(key)}"

    def _blob(self, key: str) -> tuple[str, Blob]:
        path = self.resolve_path(key)
        bucket_name, object_name = parse_object_path(path)
        return path, self.client.bucket(bucket_name).blob(object_name)

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        path, blob = self._blob(key)
        try:
            await run_in_threadpool(blob.upload_from_string, data, content_type=content_type)
        except (gcs_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as exc:
            raise self._translate(exc, path, "upload") from exc
        logger.debug("Wrote %d bytes to %s", len(data), path)
        return path

    async def download_buffer(self, key: str) -> bytes:
        path, blob = self._blob(key)
        try:
            return await run_in_threadpool(blob.download_as_bytes)
        except (gcs_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as exc:
            raise self._translate(exc, path, "download") from exc

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        path = self.resolve_path(key)
        bucket_name, object_name = parse_object_path(path)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        request = {
            "bucket_name": bucket_name,
            "object_name": object_name,
            "method": "GET",
            "expires_at": expires_at.isoformat(),
        }
        url = f"{self.sidecar_endpoint}/object-storage/signed-object-url"

        try:
            if self._http is not None:
                response = await self._http.post(url, json=request)
            else:
                async with httpx.AsyncClient(timeout=SIDECAR_TIMEOUT) as http:
                    response = await http.post(url, json=request)
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"Sidecar unreachable while signing {path}: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise TransientProviderError(f"Failed to sign object URL: {response.status_code}")
        if response.status_code >= 400:
            raise ProviderError(
                f"Failed to sign object URL: {response.status_code}", response.status_code
            )
        return response.json()["signed_url"]

    async def exists(self, key: str) -> bool:
        path, blob = self._blob(key)
        try:
            return await run_in_threadpool(blob.exists)
        except (gcs_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as exc:
            raise self._translate(exc, path, "exists") from exc

    async def delete(self, key: str) -> None:
        path, blob = self._blob(key)
        try:
            await run_in_threadpool(blob.delete)
        except gcs_exceptions.NotFound:
            return
        except (gcs_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as exc:
            raise self._translate(exc, path, "delete") from exc
        logger.debug("Deleted %s", path)

    @staticmethod
    def _translate(exc: Exception, path: str, action: str) -> StorageError:
        if isinstance(exc, gcs_exceptions.NotFound):
            return NotFoundError(f"Object not found: {path}")
        if isinstance(
            exc,
            (
                gcs_exceptions.ServerError,
                gcs_exceptions.TooManyRequests,
                auth_exceptions.GoogleAuthError,
            ),
        ):
            return TransientProviderError(f"Object storage {action} failed for {path}: {exc}")
        status = getattr(exc, "code", None)
        return ProviderError(
            f"Object storage {action} failed for {path}: {exc}",
            status if isinstance(status, int) else None,
        )
