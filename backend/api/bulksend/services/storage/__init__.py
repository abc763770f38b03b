"""Storage backends for document bytes."""

from .box import BoxStorageBackend
from .dropbox import DropboxStorageBackend
from .factory import (
    OAuthGrant,
    UserStorageContext,
    create_regional_storage,
    create_storage,
    create_user_storage,
)
from .oauth import (
    AccountInfo,
    OAuthCredential,
    OAuthProviderConfig,
    ProviderInfo,
    TokenRefreshCallback,
    available_providers,
    fetch_account_info,
    is_provider_configured,
)
from .protocol import StorageBackend, StorageProvider
from .regional import DataRegion, RegionalS3StorageBackend
from .s3 import (
    CustomS3Credentials,
    S3Connection,
    S3StorageBackend,
    UserCustomS3StorageBackend,
    UserS3StorageBackend,
)
from .sidecar import SidecarStorageBackend
from .tokens import TokenCipher, encrypting_refresh_callback

__all__ = [
    "AccountInfo",
    "BoxStorageBackend",
    "CustomS3Credentials",
    "DataRegion",
    "DropboxStorageBackend",
    "OAuthCredential",
    "OAuthGrant",
    "OAuthProviderConfig",
    "ProviderInfo",
    "RegionalS3StorageBackend",
    "S3Connection",
    "S3StorageBackend",
    "SidecarStorageBackend",
    "StorageBackend",
    "StorageProvider",
    "TokenCipher",
    "TokenRefreshCallback",
    "UserCustomS3StorageBackend",
    "UserS3StorageBackend",
    "UserStorageContext",
    "available_providers",
    "create_regional_storage",
    "create_storage",
    "create_user_storage",
    "encrypting_refresh_callback",
    "fetch_account_info",
    "is_provider_configured",
]
