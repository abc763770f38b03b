"""Storage backend factory."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ...config import Settings, StorageBackend as PlatformBackend
from ...errors import ConfigurationError, UnsupportedProviderError
from .box import BoxStorageBackend
from .dropbox import DropboxStorageBackend
from .oauth import OAuthCredential, TokenRefreshCallback, oauth_provider_config
from .protocol import StorageBackend, StorageProvider
from .regional import DataRegion, RegionalS3StorageBackend
from .s3 import (
    CustomS3Credentials,
    S3StorageBackend,
    UserCustomS3StorageBackend,
    UserS3StorageBackend,
)
from .sidecar import SidecarStorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UserStorageContext:
    """Who is storing documents and where they asked us to put them."""

    user_id: str
    provider: StorageProvider = StorageProvider.PLATFORM
    data_region: DataRegion | None = None


@dataclass(slots=True)
class OAuthGrant:
    """A user's stored OAuth credential plus where to persist refreshes."""

    credential: OAuthCredential
    on_token_refresh: TokenRefreshCallback | None = None


def create_storage(settings: Settings) -> StorageBackend:
    """Create the platform-wide storage backend.

    Meant to be called once at process start; the instance is then passed to
    whatever needs it.

    Raises:
        ConfigurationError: If the selected backend is not fully configured.
    """
    backend = settings.resolved_storage_backend()
    if backend == PlatformBackend.S3:
        logger.info("Using S3-compatible storage backend")
        return S3StorageBackend.from_settings(settings)

    logger.info("Using sidecar object storage backend")
    return SidecarStorageBackend.from_settings(settings)


def create_regional_storage(
    settings: Settings, data_region: DataRegion, bucket_name: str | None = None
) -> RegionalS3StorageBackend:
    """Storage pinned to ``data_region``; raises if that region is unconfigured."""
    return RegionalS3StorageBackend(data_region, settings, bucket_name=bucket_name)


def create_user_storage(
    context: UserStorageContext,
    settings: Settings,
    *,
    platform_storage: StorageBackend | None = None,
    custom_s3: CustomS3Credentials | None = None,
    dropbox: OAuthGrant | None = None,
    box: OAuthGrant | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> StorageBackend:
    """Create the backend a user's documents should be written to.

    Raises:
        ConfigurationError: If the provider's credentials are missing.
        UnsupportedProviderError: For recognized providers with no backend yet.
    """
    provider = context.provider

    if provider == StorageProvider.PLATFORM:
        if context.data_region is not None:
            return create_regional_storage(settings, context.data_region)
        if settings.s3_endpoint and settings.s3_bucket:
            return UserS3StorageBackend.for_user(settings, context.user_id)
        return platform_storage or create_storage(settings)

    if provider == StorageProvider.CUSTOM_S3:
        if custom_s3 is None:
            raise ConfigurationError("Custom S3 storage requires credentials to be configured.")
        return UserCustomS3StorageBackend(context.user_id, custom_s3)

    if provider == StorageProvider.DROPBOX:
        if dropbox is None:
            raise ConfigurationError("Dropbox storage requires OAuth credentials to be configured.")
        return DropboxStorageBackend(
            context.user_id,
            dropbox.credential,
            oauth_provider_config(settings, provider),
            on_token_refresh=dropbox.on_token_refresh,
            http_client=http_client,
        )

    if provider == StorageProvider.BOX:
        if box is None:
            raise ConfigurationError("Box storage requires OAuth credentials to be configured.")
        return BoxStorageBackend(
            context.user_id,
            box.credential,
            oauth_provider_config(settings, provider),
            on_token_refresh=box.on_token_refresh,
            http_client=http_client,
        )

    raise UnsupportedProviderError(
        f"External storage provider {provider.value} not yet implemented."
    )
