"""Tests for OAuth credential handling shared by the drive backends."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bulksend.errors import (
    AuthExpiredError,
    ConfigurationError,
    TransientProviderError,
    UnsupportedProviderError,
)
from bulksend.services.storage import OAuthCredential, StorageProvider
from bulksend.services.storage.oauth import (
    AccountInfo,
    OAuthStorageBackend,
    available_providers,
    build_authorization_url,
    exchange_code,
    fetch_account_info,
    is_provider_configured,
    oauth_provider_config,
    parse_expiry,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def dropbox_config(make_settings):
    settings = make_settings(dropbox_app_key="app-key", dropbox_app_secret="app-secret")
    return oauth_provider_config(settings, StorageProvider.DROPBOX)


def test_token_valid_for_ten_minutes_is_not_refreshed():
    credential = OAuthCredential("access", "refresh", NOW + timedelta(minutes=10))

    assert credential.needs_refresh(NOW) is False


def test_token_expiring_in_three_minutes_is_refreshed():
    credential = OAuthCredential("access", "refresh", NOW + timedelta(minutes=3))

    assert credential.needs_refresh(NOW) is True


def test_missing_expiry_forces_refresh():
    credential = OAuthCredential.create("access", "refresh", "not a date")

    assert credential.expires_at is None
    assert credential.needs_refresh(NOW) is True


def test_without_refresh_token_never_refreshes():
    credential = OAuthCredential.create("access", "", NOW - timedelta(hours=1))

    assert credential.refresh_token is None
    assert credential.needs_refresh(NOW) is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2026-03-01T12:00:00Z", NOW),
        ("2026-03-01T13:00:00+01:00", NOW),
        (NOW.timestamp(), NOW),
        (int(NOW.timestamp()), NOW),
        (datetime(2026, 3, 1, 12, 0), NOW),
        ("garbage", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_expiry(value, expected):
    assert parse_expiry(value) == expected


def test_provider_config(dropbox_config, make_settings):
    assert dropbox_config.token_url == "https://api.dropboxapi.com/oauth2/token"
    assert dropbox_config.default_expires_in == 14400
    assert dropbox_config.configured is True

    box = oauth_provider_config(make_settings(), StorageProvider.BOX)
    assert box.token_url == "https://api.box.com/oauth2/token"
    assert box.configured is False


def test_provider_without_oauth_flow(make_settings):
    with pytest.raises(UnsupportedProviderError):
        oauth_provider_config(make_settings(), StorageProvider.CUSTOM_S3)


def test_authorization_url(dropbox_config):
    url = build_authorization_url(dropbox_config, "state-123")

    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://www.dropbox.com/oauth2/authorize?")
    assert query["client_id"] == ["app-key"]
    assert query["state"] == ["state-123"]
    assert query["token_access_type"] == ["offline"]
    assert query["redirect_uri"] == ["http://localhost:5000/api/storage/oauth/callback/dropbox"]


def test_authorization_url_requires_app_credentials(make_settings):
    config = oauth_provider_config(make_settings(), StorageProvider.BOX)

    with pytest.raises(ConfigurationError):
        build_authorization_url(config, "state")


@pytest.mark.asyncio
async def test_exchange_code(dropbox_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(parse_qs(request.content.decode()))
        return httpx.Response(
            200, json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 14400}
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        credential = await exchange_code(dropbox_config, "auth-code", client, clock=lambda: NOW)

    assert seen["grant_type"] == ["authorization_code"]
    assert seen["code"] == ["auth-code"]
    assert credential.access_token == "new-access"
    assert credential.refresh_token == "new-refresh"
    assert credential.expires_at == NOW + timedelta(hours=4)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"), [(400, AuthExpiredError), (503, TransientProviderError)]
)
async def test_exchange_code_failures(dropbox_config, status_code, error):
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, text="nope"))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(error):
            await exchange_code(dropbox_config, "auth-code", client)


def test_oauth_backend_base_is_abstract(dropbox_config):
    with pytest.raises(TypeError, match="get_private_object_dir"):
        OAuthStorageBackend("user-1", OAuthCredential("access"), dropbox_config)


def test_provider_availability(make_settings):
    settings = make_settings(dropbox_app_key="app-key", dropbox_app_secret="app-secret")

    assert is_provider_configured(settings, StorageProvider.PLATFORM) is True
    assert is_provider_configured(settings, StorageProvider.CUSTOM_S3) is True
    assert is_provider_configured(settings, StorageProvider.DROPBOX) is True
    assert is_provider_configured(settings, StorageProvider.BOX) is False
    assert is_provider_configured(settings, StorageProvider.GOOGLE_DRIVE) is False

    providers = {info.provider: info for info in available_providers(settings)}
    assert set(providers) == set(StorageProvider)
    assert providers[StorageProvider.DROPBOX].configured is True
    assert providers[StorageProvider.BOX].configured is False
    assert providers[StorageProvider.BOX].name == "Box"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("provider", "method", "payload", "expected"),
    [
        (
            StorageProvider.DROPBOX,
            "POST",
            {"account_id": "dbid:1", "email": "ann@example.com", "name": {"display_name": "Ann"}},
            AccountInfo("dbid:1", "ann@example.com", "Ann"),
        ),
        (
            StorageProvider.BOX,
            "GET",
            {"id": "77", "login": "ann@example.com", "name": "Ann Box"},
            AccountInfo("77", "ann@example.com", "Ann Box"),
        ),
    ],
)
async def test_fetch_account_info(provider, method, payload, expected):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.headers["Authorization"]))
        return httpx.Response(200, json=payload)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        account = await fetch_account_info(provider, "granted-token", client)

    assert account == expected
    assert seen == [(method, "Bearer granted-token")]


@pytest.mark.asyncio
async def test_fetch_account_info_failures():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="expired"))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(AuthExpiredError):
            await fetch_account_info(StorageProvider.BOX, "stale-token", client)
        with pytest.raises(UnsupportedProviderError):
            await fetch_account_info(StorageProvider.GOOGLE_DRIVE, "token", client)
