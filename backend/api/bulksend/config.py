"""Application configuration using environment variables."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageBackend(str, Enum):
    """Platform storage backend types."""

    S3 = "s3"
    SIDECAR = "sidecar"


class LogFormat(str, Enum):
    PLAIN = "plain"
    JSON = "json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        # Look for .env in backend/ directory (parent of api/)
        env_file=str(Path(__file__).parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Platform storage selection. When unset, S3 is used if an endpoint and
    # bucket are configured, otherwise the sidecar backend.
    storage_backend: StorageBackend | None = None
    base_url: str = "https://fairsign.io"

    # S3-compatible storage (direct credentials)
    s3_endpoint: str = ""
    s3_region: str = "auto"
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: SecretStr = SecretStr("")
    s3_prefix: str = ""
    s3_verify_on_startup: bool = False

    # Data residency buckets
    s3_bucket_eu: str = ""
    s3_region_eu: str = ""
    s3_bucket_us: str = ""
    s3_region_us: str = "us-east-1"

    # Sidecar-authenticated object storage
    sidecar_endpoint: str = "http://127.0.0.1:1106"
    private_object_dir: str = ""

    # OAuth applications for third-party drives
    dropbox_app_key: str = ""
    dropbox_app_secret: SecretStr = SecretStr("")
    box_client_id: str = ""
    box_client_secret: SecretStr = SecretStr("")
    oauth_redirect_base_url: str = "http://localhost:5000"
    # Encrypts stored OAuth tokens
    session_secret: SecretStr = SecretStr("")

    # Bulk dispatch
    bulk_concurrency: int = 5
    bulk_item_timeout_seconds: float | None = 300.0
    signed_url_ttl_seconds: int = 3600

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.PLAIN

    def resolved_storage_backend(self) -> StorageBackend:
        if self.storage_backend is not None:
            return self.storage_backend
        if self.s3_endpoint and self.s3_bucket:
            return StorageBackend.S3
        return StorageBackend.SIDECAR

    def has_s3_credentials(self) -> bool:
        return bool(
            self.s3_endpoint
            and self.s3_access_key_id
            and self.s3_secret_access_key.get_secret_value()
        )


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
