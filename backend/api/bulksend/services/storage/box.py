"""Box storage backend.

Box has no path addressing, so every call resolves the root folder id
(searching the account root, creating the folder when absent) and then the
file id by listing that folder. Keys returned by ``upload_buffer`` carry the
Box file id as ``box:<id>`` and skip the name lookup. Any other key, digits
included, is a file name.

Box rotates refresh tokens: every refresh returns a new one and the old one
stops working immediately, so the refresh callback must persist it.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

import httpx

from ...errors import NotFoundError, ProviderError
from .oauth import OAuthStorageBackend, file_name_for_key
from .protocol import StorageProvider

logger = logging.getLogger(__name__)

API_URL = "https://api.box.com/2.0"
UPLOAD_URL = "https://upload.box.com/api/2.0"
ROOT_FOLDER_ID = "0"
DEFAULT_ROOT_FOLDER = "FairSign"
LIST_PAGE_SIZE = 1000
FILE_ID_PREFIX = "box:"


def file_id_key(file_id: str) -> str:
    return f"{FILE_ID_PREFIX}{file_id}"


def parse_file_id_key(key: str) -> str | None:
    """Box file id carried by a key returned from ``upload_buffer``, if any."""
    file_id = key.strip().removeprefix(FILE_ID_PREFIX)
    if file_id != key.strip() and file_id.isdigit():
        return file_id
    return None


def _conflict_id(response: httpx.Response) -> str | None:
    """Id of the existing item reported in a 409 name conflict."""
    try:
        conflicts = response.json().get("context_info", {}).get("conflicts")
    except ValueError:
        return None
    if isinstance(conflicts, list):
        conflicts = conflicts[0] if conflicts else None
    if isinstance(conflicts, dict):
        return conflicts.get("id")
    return None


class BoxStorageBackend(OAuthStorageBackend):
    """Stores documents in one folder under the root of a user's Box."""

    provider = StorageProvider.BOX

    def __init__(self, *args: Any, root_folder: str = DEFAULT_ROOT_FOLDER, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.root_folder = root_folder.strip("/")
        self.folder_id: str | None = None

    def get_private_object_dir(self) -> str:
        return f"/{self.root_folder}"

    # Folder and file resolution ---------------------------------------

    async def _list_items(self, folder_id: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            response = await self._request(
                "GET",
                f"{API_URL}/folders/{folder_id}/items",
                params={"fields": "id,name,type", "limit": LIST_PAGE_SIZE, "offset": offset},
            )
            self._raise_for_status(response, "list folder")
            page = response.json()
            entries = page.get("entries", [])
            items.extend(entries)
            offset += len(entries)
            if not entries or offset >= int(page.get("total_count", 0)):
                return items

    async def ensure_folder_exists(self) -> str:
        """Return the id of the root folder, creating it if needed."""
        if self.folder_id:
            return self.folder_id

        for item in await self._list_items(ROOT_FOLDER_ID):
            if item.get("type") == "folder" and item.get("name") == self.root_folder:
                self.folder_id = item["id"]
                return self.folder_id

        response = await self._request(
            "POST",
            f"{API_URL}/folders",
            json={"name": self.root_folder, "parent": {"id": ROOT_FOLDER_ID}},
        )
        if response.status_code == 409:
            # Created concurrently by another request
            existing_id = _conflict_id(response)
            if existing_id:
                self.folder_id = existing_id
                return existing_id
        self._raise_for_status(response, "folder create")

        self.folder_id = response.json()["id"]
        logger.info("Created Box folder %s for user %s", self.root_folder, self.user_id)
        return self.folder_id

    async def find_file_by_name(self, filename: str, folder_id: str) -> str | None:
        for item in await self._list_items(folder_id):
            if item.get("type") == "file" and item.get("name") == filename:
                return item["id"]
        return None

    async def resolve_file_id(self, key: str) -> str | None:
        """Box file id for ``key``; id keys pass through, names are looked up."""
        file_id = parse_file_id_key(key)
        if file_id is not None:
            return file_id
        folder_id = await self.ensure_folder_exists()
        return await self.find_file_by_name(file_name_for_key(key), folder_id)

    async def _require_file_id(self, key: str) -> str:
        file_id = await self.resolve_file_id(key)
        if file_id is None:
            raise NotFoundError(f"File not found in Box: {key}")
        return file_id

    # StorageBackend ----------------------------------------------------

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        folder_id = await self.ensure_folder_exists()
        filename = file_name_for_key(key)
        existing_id = await self.find_file_by_name(filename, folder_id)

        if existing_id is None:
            response = await self._request(
                "POST",
                f"{UPLOAD_URL}/files/content",
                data={"attributes": json.dumps({"name": filename, "parent": {"id": folder_id}})},
                files={"file": (filename, data, content_type)},
            )
            if response.status_code != 409:
                self._raise_for_status(response, "upload")
                return self._uploaded_id(response, filename)
            # Lost a race with another writer; overwrite its file instead
            existing_id = _conflict_id(response)
            if existing_id is None:
                self._raise_for_status(response, "upload")

        response = await self._request(
            "POST",
            f"{UPLOAD_URL}/files/{existing_id}/content",
            files={"file": (filename, data, content_type)},
        )
        self._raise_for_status(response, "upload new version")
        return self._uploaded_id(response, existing_id)

    @staticmethod
    def _uploaded_id(response: httpx.Response, fallback: str) -> str:
        entries = response.json().get("entries") or []
        if entries and entries[0].get("id"):
            return file_id_key(str(entries[0]["id"]))
        return file_id_key(fallback)

    async def download_buffer(self, key: str) -> bytes:
        file_id = await self._require_file_id(key)
        # Box answers with a redirect to its download host
        response = await self._request(
            "GET", f"{API_URL}/files/{file_id}/content", follow_redirects=True
        )
        self._raise_for_status(response, "download")
        return response.content

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        file_id = await self._require_file_id(key)
        response = await self._request(
            "GET", f"{API_URL}/files/{file_id}", params={"fields": "shared_link"}
        )
        self._raise_for_status(response, "get shared link")
        shared_link = response.json().get("shared_link")

        if not shared_link:
            unshared_at = (self._clock() + timedelta(seconds=ttl_seconds)).isoformat()
            response = await self._request(
                "PUT",
                f"{API_URL}/files/{file_id}",
                params={"fields": "shared_link"},
                json={"shared_link": {"access": "open", "unshared_at": unshared_at}},
            )
            self._raise_for_status(response, "create shared link")
            shared_link = response.json().get("shared_link") or {}

        url = shared_link.get("download_url") or shared_link.get("url")
        if not url:
            raise ProviderError("Box returned no shared link")
        return url

    async def exists(self, key: str) -> bool:
        file_id = parse_file_id_key(key)
        if file_id is not None:
            response = await self._request(
                "GET", f"{API_URL}/files/{file_id}", params={"fields": "id"}
            )
            if response.status_code == 404:
                return False
            self._raise_for_status(response, "get file")
            return True
        return await self.resolve_file_id(key) is not None

    async def delete(self, key: str) -> None:
        file_id = await self.resolve_file_id(key)
        if file_id is None:
            return
        response = await self._request("DELETE", f"{API_URL}/files/{file_id}")
        if response.status_code == 404:
            return
        self._raise_for_status(response, "delete")
        logger.debug("Deleted Box file %s", file_id)
