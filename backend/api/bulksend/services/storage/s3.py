"""S3-compatible storage backends for document bytes.

All variants speak the plain S3 API through boto3 with path-style
addressing, which non-AWS endpoints (R2, MinIO, Spaces) require. They differ
only in where credentials come from and how a caller key maps to the
physical object key:

    - S3StorageBackend: shared platform credentials, optional key prefix
    - UserS3StorageBackend: platform bucket, keys under users/{id}/
    - UserCustomS3StorageBackend: user-supplied bucket and credentials, keys
      under users/{id}/documents/

boto3 is blocking, so every network call is pushed to the threadpool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from ...config import Settings
from ...errors import (
    ConfigurationError,
    NotFoundError,
    ProviderError,
    StorageError,
    TransientProviderError,
)
from .protocol import validate_key

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
TRANSIENT_CODES = {"RequestTimeout", "SlowDown", "InternalError", "ServiceUnavailable"}


@dataclass(frozen=True, slots=True)
class S3Connection:
    """Endpoint and credentials for an S3-compatible service."""

    endpoint: str
    access_key_id: str
    secret_access_key: str
    region: str = "auto"

    @classmethod
    def from_settings(cls, settings: Settings, region: str | None = None) -> S3Connection:
        if not settings.has_s3_credentials():
            raise ConfigurationError(
                "S3 storage requires S3_ENDPOINT, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY"
            )
        return cls(
            endpoint=settings.s3_endpoint,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key.get_secret_value(),
            region=region or settings.s3_region or "auto",
        )

    def create_client(self):
        return boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )


@dataclass(frozen=True, slots=True)
class CustomS3Credentials:
    """S3 credentials an end user configured for their own bucket."""

    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    region: str = "auto"
    prefix: str = ""


def _error_code(exc: ClientError) -> tuple[str, int | None]:
    error = exc.response.get("Error", {})
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return str(error.get("Code", "")), status


class S3StorageBackend:
    """S3-compatible storage using one shared set of credentials."""

    def __init__(self, connection: S3Connection, bucket_name: str, prefix: str = ""):
        if not bucket_name:
            raise ConfigurationError("S3 bucket name is required")

        self.connection = connection
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self.s3_client = connection.create_client()

    @classmethod
    def from_settings(cls, settings: Settings) -> S3StorageBackend:
        if not settings.s3_bucket:
            raise ConfigurationError("S3 storage requires S3_BUCKET")
        return cls(S3Connection.from_settings(settings), settings.s3_bucket, settings.s3_prefix)

    def get_private_object_dir(self) -> str:
        return self.prefix

    # Key mapping -------------------------------------------------------

    def object_key(self, key: str) -> str:
        """Translate a storage key into the physical S3 object key."""
        clean = validate_key(key)
        if self.prefix:
            return f"{self.prefix}/{clean}"
        return clean

    def _storage_key(self, key: str) -> str:
        """Key handed back to callers after an upload."""
        return validate_key(key)

    # Operations --------------------------------------------------------

    async def verify_bucket(self) -> None:
        """Check the bucket exists and is reachable with our credentials.

        Performs a HEAD request, mapping 404/403 to configuration errors so a
        misconfigured deployment fails at startup.
        """
        try:
            await run_in_threadpool(self.s3_client.head_bucket, Bucket=self.bucket_name)
        except ClientError as e:
            error_code, _ = _error_code(e)
            if error_code in ("404", "NoSuchBucket"):
                raise ConfigurationError(f"S3 bucket '{self.bucket_name}' does not exist") from e
            if error_code == "403":
                raise ConfigurationError(f"Access denied to S3 bucket '{self.bucket_name}'") from e
            raise ConfigurationError(f"Failed to verify S3 bucket '{self.bucket_name}': {e}") from e

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        object_key = self.object_key(key)
        try:
            await run_in_threadpool(
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=object_key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, object_key, "upload") from exc

        logger.debug("Wrote %d bytes to s3://%s/%s", len(data), self.bucket_name, object_key)
        return self._storage_key(key)

    async def download_buffer(self, key: str) -> bytes:
        object_key = self.object_key(key)
        try:
            return await run_in_threadpool(self._read_object, object_key)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, object_key, "download") from exc

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        object_key = self.object_key(key)
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": object_key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, object_key, "sign") from exc

    async def exists(self, key: str) -> bool:
        object_key = self.object_key(key)
        try:
            await run_in_threadpool(
                self.s3_client.head_object, Bucket=self.bucket_name, Key=object_key
            )
        except ClientError as exc:
            error_code, _ = _error_code(exc)
            if error_code in NOT_FOUND_CODES:
                return False
            raise self._translate(exc, object_key, "head") from exc
        except BotoCoreError as exc:
            raise self._translate(exc, object_key, "head") from exc
        return True

    async def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys
        object_key = self.object_key(key)
        try:
            await run_in_threadpool(
                self.s3_client.delete_object, Bucket=self.bucket_name, Key=object_key
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, object_key, "delete") from exc
        logger.debug("Deleted s3://%s/%s", self.bucket_name, object_key)

    # Internal helpers --------------------------------------------------

    def _read_object(self, object_key: str) -> bytes:
        response = self.s3_client.get_object(Bucket=self.bucket_name, Key=object_key)
        body = response.get("Body")
        if body is None:
            raise ProviderError(f"Empty response body for s3://{self.bucket_name}/{object_key}")
        return body.read()

    def _translate(self, exc: Exception, object_key: str, action: str) -> StorageError:
        location = f"s3://{self.bucket_name}/{object_key}"
        if isinstance(exc, BotoCoreError):
            return TransientProviderError(f"S3 {action} failed for {location}: {exc}")

        assert isinstance(exc, ClientError)
        error_code, status = _error_code(exc)
        if error_code in NOT_FOUND_CODES:
            return NotFoundError(f"Object not found: {location}")
        if error_code in TRANSIENT_CODES or (status is not None and status >= 500):
            return TransientProviderError(f"S3 {action} failed for {location}: {exc}")
        return ProviderError(f"S3 {action} failed for {location}: {exc}", status)


class UserS3StorageBackend(S3StorageBackend):
    """Platform bucket with every key confined to ``users/{user_id}/``.

    The namespace is applied here on every operation, whatever key the
    caller passes, so two users can never address each other's objects.
    """

    def __init__(self, connection: S3Connection, bucket_name: str, user_id: str):
        if not user_id:
            raise ConfigurationError("Per-user storage requires a user id")
        super().__init__(connection, bucket_name)
        self.user_id = user_id

    @classmethod
    def for_user(cls, settings: Settings, user_id: str) -> UserS3StorageBackend:
        if not settings.s3_bucket:
            raise ConfigurationError("S3 storage requires S3_BUCKET")
        return cls(S3Connection.from_settings(settings), settings.s3_bucket, user_id)

    def get_private_object_dir(self) -> str:
        return f"users/{self.user_id}"

    def object_key(self, key: str) -> str:
        clean = validate_key(key)
        namespace = f"{self.get_private_object_dir()}/"
        if clean.startswith(namespace):
            return clean
        return f"{namespace}{clean}"

    def _storage_key(self, key: str) -> str:
        return self.object_key(key)


class UserCustomS3StorageBackend(S3StorageBackend):
    """A user's own S3-compatible bucket.

    Writes land under ``{prefix}/users/{user_id}/documents/`` so several
    platform users can share one external bucket.
    """

    def __init__(self, user_id: str, credentials: CustomS3Credentials):
        missing = [
            name
            for name in ("endpoint", "bucket", "access_key_id", "secret_access_key")
            if not getattr(credentials, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Custom S3 storage is missing credentials: {', '.join(missing)}"
            )
        if not user_id:
            raise ConfigurationError("Custom S3 storage requires a user id")

        connection = S3Connection(
            endpoint=credentials.endpoint,
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            region=credentials.region or "auto",
        )
        super().__init__(connection, credentials.bucket, credentials.prefix)
        self.user_id = user_id

    def _namespace(self) -> str:
        base = f"{self.prefix}/" if self.prefix else ""
        return f"{base}users/{self.user_id}/documents/"

    def object_key(self, key: str) -> str:
        clean = validate_key(key)
        namespace = self._namespace()
        if clean.startswith(namespace):
            return clean
        return f"{namespace}{clean}"

    def _storage_key(self, key: str) -> str:
        return self.object_key(key)
