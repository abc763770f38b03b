"""OAuth credential lifecycle shared by the third-party drive backends.

Each backend instance owns one ``OAuthCredential``. Before every
authenticated call the credential is checked and refreshed when it expires
within ``REFRESH_BUFFER`` (or has no usable expiry at all). A 401 that slips
through triggers exactly one refresh-and-retry. Refreshes are single-flight
per instance: concurrent callers wait on a lock and reuse the token the first
caller obtained.

Every refresh is reported to an injected ``TokenRefreshCallback`` so the new
token survives a restart.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx

from ...config import Settings
from ...errors import (
    AuthExpiredError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
    UnsupportedProviderError,
)
from .protocol import StorageProvider, validate_key

logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)
HTTP_TIMEOUT = 30.0

TokenRefreshCallback = Callable[[str, str | None, datetime], Awaitable[None]]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_expiry(value: datetime | str | int | float | None) -> datetime | None:
    """Normalize a stored expiry into an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings and
    epoch seconds. Anything unparseable yields ``None``, which callers treat
    as already expired.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class OAuthCredential:
    """Access token plus what is needed to renew it."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def create(
        cls,
        access_token: str,
        refresh_token: str | None = None,
        token_expires_at: datetime | str | int | float | None = None,
    ) -> OAuthCredential:
        return cls(access_token, refresh_token or None, parse_expiry(token_expires_at))

    def needs_refresh(self, now: datetime, buffer: timedelta = REFRESH_BUFFER) -> bool:
        """Whether the token should be renewed before the next call."""
        if not self.refresh_token:
            return False
        if self.expires_at is None:
            return True
        return now > self.expires_at - buffer


@dataclass(frozen=True, slots=True)
class OAuthProviderConfig:
    """Endpoints and app credentials of one OAuth provider."""

    provider: StorageProvider
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    scope: str
    redirect_uri: str = ""
    default_expires_in: int = 3600
    authorize_params: Mapping[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def oauth_provider_config(settings: Settings, provider: StorageProvider) -> OAuthProviderConfig:
    """OAuth application settings for ``provider``.

    Raises:
        UnsupportedProviderError: If the provider has no OAuth flow.
    """
    redirect_uri = (
        f"{settings.oauth_redirect_base_url.rstrip('/')}"
        f"/api/storage/oauth/callback/{provider.value}"
    )
    if provider == StorageProvider.DROPBOX:
        return OAuthProviderConfig(
            provider=provider,
            client_id=settings.dropbox_app_key,
            client_secret=settings.dropbox_app_secret.get_secret_value(),
            authorize_url="https://www.dropbox.com/oauth2/authorize",
            token_url="https://api.dropboxapi.com/oauth2/token",
            scope="files.content.write files.content.read account_info.read",
            redirect_uri=redirect_uri,
            default_expires_in=14400,
            authorize_params={"token_access_type": "offline"},
        )
    if provider == StorageProvider.BOX:
        return OAuthProviderConfig(
            provider=provider,
            client_id=settings.box_client_id,
            client_secret=settings.box_client_secret.get_secret_value(),
            authorize_url="https://account.box.com/api/oauth2/authorize",
            token_url="https://api.box.com/oauth2/token",
            scope="root_readwrite",
            redirect_uri=redirect_uri,
            default_expires_in=3600,
        )
    raise UnsupportedProviderError(f"No OAuth flow for storage provider {provider.value}")


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    provider: StorageProvider
    name: str
    description: str
    configured: bool


PROVIDER_DESCRIPTIONS = {
    StorageProvider.PLATFORM: (
        "FairSign Storage",
        "Encrypted storage operated by the platform.",
    ),
    StorageProvider.CUSTOM_S3: (
        "Custom S3 Storage",
        "Your own S3-compatible bucket (AWS S3, Cloudflare R2, MinIO, ...).",
    ),
    StorageProvider.GOOGLE_DRIVE: (
        "Google Drive",
        "Store signed documents in your Google Drive account.",
    ),
    StorageProvider.DROPBOX: (
        "Dropbox",
        "Store signed documents in your Dropbox account.",
    ),
    StorageProvider.BOX: (
        "Box",
        "Store signed documents in your Box account.",
    ),
}


def is_provider_configured(settings: Settings, provider: StorageProvider) -> bool:
    """Whether users can currently be offered ``provider``."""
    if provider in (StorageProvider.PLATFORM, StorageProvider.CUSTOM_S3):
        # Custom S3 credentials come from the user
        return True
    if provider in (StorageProvider.DROPBOX, StorageProvider.BOX):
        return oauth_provider_config(settings, provider).configured
    return False


def available_providers(settings: Settings) -> list[ProviderInfo]:
    return [
        ProviderInfo(provider, name, description, is_provider_configured(settings, provider))
        for provider, (name, description) in PROVIDER_DESCRIPTIONS.items()
    ]


@dataclass(frozen=True, slots=True)
class AccountInfo:
    """The provider account a credential belongs to."""

    account_id: str | None
    email: str | None
    name: str | None


async def fetch_account_info(
    provider: StorageProvider,
    access_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> AccountInfo:
    """Look up the account behind a freshly granted access token.

    Raises:
        UnsupportedProviderError: If the provider has no OAuth flow.
        AuthExpiredError: If the provider rejects the token.
        TransientProviderError: On network failure or a 5xx response.
        ProviderError: On any other unsuccessful response.
    """
    if provider == StorageProvider.DROPBOX:
        method, url = "POST", "https://api.dropboxapi.com/2/users/get_current_account"
    elif provider == StorageProvider.BOX:
        method, url = "GET", "https://api.box.com/2.0/users/me"
    else:
        raise UnsupportedProviderError(f"No OAuth flow for storage provider {provider.value}")

    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        if http_client is not None:
            response = await http_client.request(method, url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                response = await client.request(method, url, headers=headers)
    except httpx.TransportError as exc:
        raise TransientProviderError(f"{provider.value} account lookup failed: {exc}") from exc

    if response.status_code == 401:
        raise AuthExpiredError(f"{provider.value} rejected the access token")
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientProviderError(
            f"{provider.value} account lookup failed: {response.status_code}"
        )
    if response.is_error:
        raise ProviderError(
            f"{provider.value} account lookup failed: {response.text}", response.status_code
        )

    payload = response.json()
    if provider == StorageProvider.DROPBOX:
        return AccountInfo(
            account_id=payload.get("account_id"),
            email=payload.get("email"),
            name=(payload.get("name") or {}).get("display_name"),
        )
    return AccountInfo(
        account_id=payload.get("id"),
        email=payload.get("login"),
        name=payload.get("name"),
    )


def build_authorization_url(config: OAuthProviderConfig, state: str) -> str:
    """URL that sends the user to the provider's consent screen."""
    if not config.configured:
        raise ConfigurationError(f"{config.provider.value} OAuth app is not configured")
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "state": state,
        "scope": config.scope,
        **config.authorize_params,
    }
    return f"{config.authorize_url}?{urlencode(params)}"


async def exchange_code(
    config: OAuthProviderConfig,
    code: str,
    http_client: httpx.AsyncClient | None = None,
    clock: Clock = utcnow,
) -> OAuthCredential:
    """Trade an authorization code for the user's first credential."""
    if not config.configured:
        raise ConfigurationError(f"{config.provider.value} OAuth app is not configured")
    data = {
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "code": code,
        "redirect_uri": config.redirect_uri,
        "grant_type": "authorization_code",
    }
    try:
        if http_client is not None:
            response = await http_client.post(config.token_url, data=data)
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                response = await client.post(config.token_url, data=data)
    except httpx.TransportError as exc:
        raise TransientProviderError(f"{config.provider.value} token endpoint unreachable") from exc

    if response.status_code >= 500:
        raise TransientProviderError(
            f"{config.provider.value} token exchange failed: {response.status_code}"
        )
    if response.is_error:
        raise AuthExpiredError(f"{config.provider.value} token exchange failed: {response.text}")

    payload = response.json()
    expires_in = payload.get("expires_in")
    expires_at = clock() + timedelta(seconds=expires_in) if expires_in else None
    return OAuthCredential(payload["access_token"], payload.get("refresh_token"), expires_at)


class OAuthStorageBackend(ABC):
    """Base class for drives reached through a user's OAuth grant."""

    provider: ClassVar[StorageProvider]

    def __init__(
        self,
        user_id: str,
        credential: OAuthCredential,
        config: OAuthProviderConfig,
        on_token_refresh: TokenRefreshCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ):
        if not credential.access_token:
            raise ConfigurationError(f"{self.provider.value} storage requires an access token")
        if credential.refresh_token and not config.configured:
            raise ConfigurationError(
                f"{self.provider.value} OAuth app credentials are required to refresh tokens"
            )

        self.user_id = user_id
        self.credential = credential
        self.config = config
        self.on_token_refresh = on_token_refresh
        self._clock = clock
        self._refresh_lock = asyncio.Lock()
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # Token lifecycle ---------------------------------------------------

    async def ensure_valid_token(self) -> None:
        """Refresh ahead of expiry; no-op without a refresh token."""
        if not self.credential.needs_refresh(self._clock()):
            return
        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if self.credential.needs_refresh(self._clock()):
                await self._refresh_access_token()

    async def _refresh_access_token(self) -> None:
        """Exchange the refresh token for a new access token.

        Must be called with ``_refresh_lock`` held.
        """
        refresh_token = self.credential.refresh_token
        if not refresh_token:
            raise AuthExpiredError("No refresh token available for token refresh")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        try:
            response = await self.http.post(self.config.token_url, data=data)
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"{self.provider.value} token endpoint unreachable: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise TransientProviderError(
                f"Failed to refresh {self.provider.value} token: {response.status_code}"
            )
        if response.is_error:
            raise AuthExpiredError(
                f"Failed to refresh {self.provider.value} token: {response.text}"
            )

        payload = response.json()
        expires_in = payload.get("expires_in") or self.config.default_expires_in
        expires_at = self._clock() + timedelta(seconds=int(expires_in))
        new_refresh_token = payload.get("refresh_token") or None

        self.credential.access_token = payload["access_token"]
        self.credential.expires_at = expires_at
        if new_refresh_token:
            # Rotating providers invalidate the old refresh token right away
            self.credential.refresh_token = new_refresh_token

        logger.info(
            "Refreshed %s token for user %s (expires %s)",
            self.provider.value,
            self.user_id,
            expires_at.isoformat(),
            extra={"provider": self.provider.value},
        )
        if self.on_token_refresh is not None:
            await self.on_token_refresh(self.credential.access_token, new_refresh_token, expires_at)

    # Requests ----------------------------------------------------------

    async def _send(
        self, method: str, url: str, token: str, headers: Mapping[str, str] | None, **kwargs: Any
    ) -> httpx.Response:
        request_headers = {**(headers or {}), "Authorization": f"Bearer {token}"}
        try:
            return await self.http.request(method, url, headers=request_headers, **kwargs)
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"{self.provider.value} request to {url} failed: {exc}"
            ) from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated request, refreshing the token at most once."""
        await self.ensure_valid_token()

        token = self.credential.access_token
        response = await self._send(method, url, token, headers, **kwargs)
        if response.status_code != 401:
            return response

        if not self.credential.refresh_token:
            raise AuthExpiredError(f"{self.provider.value} rejected the access token")

        async with self._refresh_lock:
            if self.credential.access_token == token:
                await self._refresh_access_token()

        response = await self._send(method, url, self.credential.access_token, headers, **kwargs)
        if response.status_code == 401:
            raise AuthExpiredError(
                f"{self.provider.value} rejected the access token after refresh"
            )
        return response

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if not response.is_error:
            return
        message = f"{self.provider.value} {action} failed: {response.status_code} {response.text}"
        if response.status_code == 404:
            raise NotFoundError(message)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(message)
        raise ProviderError(message, response.status_code)

    @abstractmethod
    def get_private_object_dir(self) -> str:
        """Folder the backend keeps its documents in."""


def file_name_for_key(key: str) -> str:
    """Flatten a hierarchical storage key into one file name.

    The drives keep every document directly in the root folder, so the key's
    path segments are folded into the name to keep distinct keys distinct.
    """
    return validate_key(key).replace("/", "__")
