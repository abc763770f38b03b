"""Storage backend protocol definition."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable

from ...errors import InvalidKeyError


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol defining the storage interface for document bytes.

    Every provider family implements the same interface, making them
    interchangeable for the bulk coordinator and the rest of the platform.
    The key returned by ``upload_buffer`` is the one callers persist and
    pass back to the other operations.
    """

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        """Store ``data`` at ``key``, overwriting any existing object."""
        ...

    async def download_buffer(self, key: str) -> bytes:
        """Return the stored bytes or raise ``NotFoundError``."""
        ...

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        """Return a time-limited URL for downloading the object."""
        ...

    async def exists(self, key: str) -> bool:
        """Check whether an object is stored under ``key``."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the object; deleting a missing object is a no-op."""
        ...

    def get_private_object_dir(self) -> str:
        """Return the namespace this backend writes under."""
        ...


def validate_key(key: str) -> str:
    """Normalize a caller-supplied key and reject traversal attempts."""
    if not isinstance(key, str):
        raise InvalidKeyError("Storage key must be a string.")
    clean = key.strip().lstrip("/")
    if not clean:
        raise InvalidKeyError("Storage key must not be empty.")
    if any(segment in ("..", ".") for segment in clean.split("/")):
        raise InvalidKeyError(f"Invalid storage key: {key!r}")
    return clean


class StorageProvider(str, Enum):
    """Where a user's documents are stored."""

    PLATFORM = "fairsign"
    CUSTOM_S3 = "custom_s3"
    DROPBOX = "dropbox"
    BOX = "box"
    GOOGLE_DRIVE = "google_drive"
