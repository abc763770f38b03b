"""Region-pinned S3 storage for data residency."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ...config import Settings
from ...errors import ConfigurationError
from .s3 import S3Connection, S3StorageBackend


class DataRegion(str, Enum):
    """Regions a user's document bytes may be pinned to."""

    EU = "EU"
    US = "US"


@dataclass(frozen=True, slots=True)
class RegionalBucketConfig:
    bucket: str
    region: str
    endpoint: str


def regional_bucket_config(settings: Settings, data_region: DataRegion) -> RegionalBucketConfig:
    """Resolve the bucket and region configured for ``data_region``.

    EU is the default region and falls back to the platform bucket. US must
    be configured explicitly.

    Raises:
        ConfigurationError: If credentials or the region's bucket are missing.
    """
    if not settings.has_s3_credentials():
        raise ConfigurationError(
            "S3 storage requires S3_ENDPOINT, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY"
        )

    if data_region == DataRegion.US:
        if not settings.s3_bucket_us:
            raise ConfigurationError("S3_BUCKET_US is required for the US region")
        return RegionalBucketConfig(
            bucket=settings.s3_bucket_us,
            region=settings.s3_region_us or "us-east-1",
            endpoint=settings.s3_endpoint,
        )

    bucket = settings.s3_bucket_eu or settings.s3_bucket
    if not bucket:
        raise ConfigurationError("S3_BUCKET_EU or S3_BUCKET is required for the EU region")
    return RegionalBucketConfig(
        bucket=bucket,
        region=settings.s3_region_eu or settings.s3_region or "auto",
        endpoint=settings.s3_endpoint,
    )


def is_regional_storage_available(settings: Settings) -> bool:
    """True when a second (US) bucket is configured."""
    return bool(settings.s3_bucket_us)


def storage_bucket_info(settings: Settings, data_region: DataRegion) -> dict[str, str]:
    """Bucket and region to record on a new document."""
    config = regional_bucket_config(settings, data_region)
    return {"storage_bucket": config.bucket, "storage_region": data_region.value}


class RegionalS3StorageBackend(S3StorageBackend):
    """S3 backend bound to the bucket of one data region.

    Construction fails when the requested region is not configured, so a
    residency violation can never surface halfway through an upload.
    """

    def __init__(
        self,
        data_region: DataRegion,
        settings: Settings,
        bucket_name: str | None = None,
    ):
        config = regional_bucket_config(settings, data_region)
        connection = S3Connection.from_settings(settings, region=config.region)
        super().__init__(connection, bucket_name or config.bucket, settings.s3_prefix)
        self.data_region = data_region


def storage_for_region(settings: Settings, data_region: DataRegion) -> RegionalS3StorageBackend:
    """Backend for new uploads of a user pinned to ``data_region``."""
    return RegionalS3StorageBackend(data_region, settings)


def storage_for_bucket(
    settings: Settings, bucket_name: str, data_region: DataRegion = DataRegion.EU
) -> RegionalS3StorageBackend:
    """Backend for reading a document that recorded its bucket at creation."""
    return RegionalS3StorageBackend(data_region, settings, bucket_name=bucket_name)
