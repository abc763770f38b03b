"""Tests for storage backend selection."""

from unittest.mock import MagicMock

import pytest

from bulksend.config import StorageBackend as PlatformBackend
from bulksend.errors import ConfigurationError, UnsupportedProviderError
from bulksend.services.storage import (
    BoxStorageBackend,
    CustomS3Credentials,
    DataRegion,
    DropboxStorageBackend,
    OAuthCredential,
    OAuthGrant,
    RegionalS3StorageBackend,
    S3StorageBackend,
    SidecarStorageBackend,
    StorageBackend,
    StorageProvider,
    UserCustomS3StorageBackend,
    UserS3StorageBackend,
    UserStorageContext,
    create_storage,
    create_user_storage,
)


def test_s3_selected_when_endpoint_and_bucket_set(mock_boto3, make_settings):
    storage = create_storage(make_settings())

    assert isinstance(storage, S3StorageBackend)
    assert isinstance(storage, StorageBackend)


def test_sidecar_selected_otherwise(make_settings):
    settings = make_settings(s3_endpoint="", private_object_dir="/bucket/.private")

    storage = create_storage(settings)

    assert isinstance(storage, SidecarStorageBackend)
    assert storage.get_private_object_dir() == "/bucket/.private"


def test_explicit_backend_wins(make_settings):
    settings = make_settings(
        storage_backend=PlatformBackend.SIDECAR, private_object_dir="/bucket/.private"
    )

    assert isinstance(create_storage(settings), SidecarStorageBackend)


def test_unconfigured_sidecar_fails_fast(make_settings):
    with pytest.raises(ConfigurationError, match="PRIVATE_OBJECT_DIR"):
        create_storage(make_settings(s3_bucket=""))


def test_platform_user_storage_is_namespaced(mock_boto3, make_settings):
    storage = create_user_storage(UserStorageContext("user-x"), make_settings())

    assert isinstance(storage, UserS3StorageBackend)
    assert storage.user_id == "user-x"


def test_platform_user_storage_falls_back_to_platform_backend(make_settings):
    platform = MagicMock()

    storage = create_user_storage(
        UserStorageContext("user-x"), make_settings(s3_endpoint=""), platform_storage=platform
    )

    assert storage is platform


def test_region_pinned_user_storage(mock_boto3, make_settings):
    settings = make_settings(s3_bucket_us="documents-us")

    storage = create_user_storage(UserStorageContext("user-x", data_region=DataRegion.US), settings)

    assert isinstance(storage, RegionalS3StorageBackend)
    assert storage.bucket_name == "documents-us"


def test_region_pinned_user_storage_unconfigured(mock_boto3, make_settings):
    context = UserStorageContext("user-x", data_region=DataRegion.US)

    with pytest.raises(ConfigurationError):
        create_user_storage(context, make_settings())


def test_custom_s3_requires_credentials(make_settings):
    context = UserStorageContext("user-x", StorageProvider.CUSTOM_S3)

    with pytest.raises(ConfigurationError, match="Custom S3 storage requires credentials"):
        create_user_storage(context, make_settings())


def test_custom_s3(mock_boto3, make_settings):
    context = UserStorageContext("user-x", StorageProvider.CUSTOM_S3)
    credentials = CustomS3Credentials("https://minio.example.com", "bucket", "key", "secret")

    storage = create_user_storage(context, make_settings(), custom_s3=credentials)

    assert isinstance(storage, UserCustomS3StorageBackend)


def test_oauth_providers(make_settings):
    settings = make_settings(
        dropbox_app_key="app-key",
        dropbox_app_secret="app-secret",
        box_client_id="box-client",
        box_client_secret="box-secret",
    )
    grant = OAuthGrant(OAuthCredential("access", "refresh"))

    dropbox = create_user_storage(
        UserStorageContext("user-x", StorageProvider.DROPBOX), settings, dropbox=grant
    )
    box = create_user_storage(UserStorageContext("user-x", StorageProvider.BOX), settings, box=grant)

    assert isinstance(dropbox, DropboxStorageBackend)
    assert isinstance(box, BoxStorageBackend)
    assert box.user_id == "user-x"


def test_oauth_provider_without_grant(make_settings):
    context = UserStorageContext("user-x", StorageProvider.BOX)

    with pytest.raises(ConfigurationError, match="Box storage requires OAuth credentials"):
        create_user_storage(context, make_settings())


def test_unimplemented_provider(make_settings):
    context = UserStorageContext("user-x", StorageProvider.GOOGLE_DRIVE)

    with pytest.raises(UnsupportedProviderError, match="google_drive not yet implemented"):
        create_user_storage(context, make_settings())
