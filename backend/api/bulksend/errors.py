"""Exception types shared by the storage backends and the bulk coordinator."""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage backend failures."""


class ConfigurationError(StorageError, ValueError):
    """Required configuration is missing or invalid.

    Raised while constructing a backend, never deferred to the first call.
    """


class InvalidKeyError(StorageError, ValueError):
    """A storage key is empty or tries to escape its namespace."""


class NotFoundError(StorageError):
    """The requested object or file does not exist."""


class TransientProviderError(StorageError):
    """Network failure or 5xx response from a storage provider."""


class AuthExpiredError(StorageError):
    """The provider rejected our credentials and a refresh did not help."""


class ProviderError(StorageError):
    """Any other unsuccessful provider response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnsupportedProviderError(StorageError):
    """The provider is recognized but not implemented."""


class TokenDecryptionError(StorageError):
    """A stored OAuth token cannot be decrypted with the current secret."""


class BatchNotFoundError(LookupError):
    """No bulk batch exists with the given id."""

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Bulk batch {batch_id} not found")
        self.batch_id = batch_id
