"""Shared fixtures for storage backend tests."""

from unittest.mock import MagicMock, patch

import pytest

from bulksend.config import Settings


@pytest.fixture
def make_settings():
    """Build settings with working S3 credentials, ignoring any .env file."""

    def _make(**overrides) -> Settings:
        values = {
            "s3_endpoint": "https://s3.example.com",
            "s3_bucket": "documents",
            "s3_access_key_id": "test-key",
            "s3_secret_access_key": "test-secret",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def mock_boto3():
    """Patch boto3.client as used by the S3 backends."""
    with patch("bulksend.services.storage.s3.boto3.client") as mock_boto:
        mock_client = MagicMock()
        mock_boto.return_value = mock_client
        # Mock head_bucket to succeed by default
        mock_client.head_bucket.return_value = {}
        yield mock_boto


@pytest.fixture
def mock_s3_client(mock_boto3):
    return mock_boto3.return_value
