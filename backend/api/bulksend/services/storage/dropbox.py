"""Dropbox storage backend.

Documents live flat in one root folder of the user's Dropbox. The folder is
created on first use; a concurrent creator winning the race is fine, we just
look the existing folder up. Files are located by listing that folder and
matching on name.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ...errors import NotFoundError, ProviderError
from .oauth import OAuthStorageBackend, file_name_for_key
from .protocol import StorageProvider

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
DEFAULT_ROOT_FOLDER = "FairSign"
LIST_PAGE_SIZE = 2000


def _error_summary(response) -> str:
    try:
        return str(response.json().get("error_summary", ""))
    except ValueError:
        return response.text


class DropboxStorageBackend(OAuthStorageBackend):
    """Stores documents in ``/{root_folder}`` of a user's Dropbox."""

    provider = StorageProvider.DROPBOX

    def __init__(self, *args: Any, root_folder: str = DEFAULT_ROOT_FOLDER, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.root_path = f"/{root_folder.strip('/')}"
        self.root_folder_id: str | None = None

    def get_private_object_dir(self) -> str:
        return self.root_path

    # Folder and file resolution ---------------------------------------

    async def ensure_root_folder(self) -> str:
        """Return the root folder id, creating the folder if needed."""
        if self.root_folder_id:
            return self.root_folder_id

        response = await self._request(
            "POST",
            f"{API_URL}/files/create_folder_v2",
            json={"path": self.root_path, "autorename": False},
        )
        if response.status_code == 409 and _error_summary(response).startswith(
            "path/conflict/folder"
        ):
            metadata = await self._request(
                "POST", f"{API_URL}/files/get_metadata", json={"path": self.root_path}
            )
            self._raise_for_status(metadata, "folder lookup")
            self.root_folder_id = metadata.json()["id"]
            return self.root_folder_id

        self._raise_for_status(response, "folder create")
        self.root_folder_id = response.json()["metadata"]["id"]
        logger.info("Created Dropbox folder %s for user %s", self.root_path, self.user_id)
        return self.root_folder_id

    async def _list_root(self) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        response = await self._request(
            "POST",
            f"{API_URL}/files/list_folder",
            json={"path": self.root_path, "limit": LIST_PAGE_SIZE},
        )
        while True:
            self._raise_for_status(response, "list folder")
            page = response.json()
            entries.extend(page.get("entries", []))
            if not page.get("has_more"):
                return entries
            response = await self._request(
                "POST",
                f"{API_URL}/files/list_folder/continue",
                json={"cursor": page["cursor"]},
            )

    def _file_name(self, key: str) -> str:
        # Keys handed out by upload are full paths inside the root folder
        if key.lower().startswith(f"{self.root_path.lower()}/"):
            return key[len(self.root_path) + 1 :]
        return file_name_for_key(key)

    async def find_file(self, key: str) -> dict[str, Any] | None:
        """Metadata of the file stored for ``key``, or ``None``."""
        await self.ensure_root_folder()
        name = self._file_name(key).lower()
        for entry in await self._list_root():
            if entry.get(".tag") == "file" and entry.get("name", "").lower() == name:
                return entry
        return None

    async def _require_file(self, key: str) -> dict[str, Any]:
        entry = await self.find_file(key)
        if entry is None:
            raise NotFoundError(f"File not found in Dropbox: {key}")
        return entry

    # StorageBackend ----------------------------------------------------

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        await self.ensure_root_folder()
        path = f"{self.root_path}/{self._file_name(key)}"
        api_arg = {"path": path, "mode": "overwrite", "autorename": False, "mute": True}

        response = await self._request(
            "POST",
            f"{CONTENT_URL}/files/upload",
            headers={
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps(api_arg),
            },
            content=data,
        )
        self._raise_for_status(response, "upload")
        logger.debug("Uploaded %d bytes to Dropbox %s", len(data), path)
        return response.json().get("path_display") or path

    async def download_buffer(self, key: str) -> bytes:
        entry = await self._require_file(key)
        response = await self._request(
            "POST",
            f"{CONTENT_URL}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": entry["path_lower"]})},
        )
        if response.status_code == 409:
            raise NotFoundError(f"Dropbox download failed: {_error_summary(response)}")
        self._raise_for_status(response, "download")
        return response.content

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        # Dropbox temporary links always last four hours
        entry = await self._require_file(key)
        response = await self._request(
            "POST",
            f"{API_URL}/files/get_temporary_link",
            json={"path": entry["path_lower"]},
        )
        self._raise_for_status(response, "temporary link")
        link = response.json().get("link")
        if not link:
            raise ProviderError("Dropbox returned no temporary link")
        return link

    async def exists(self, key: str) -> bool:
        return await self.find_file(key) is not None

    async def delete(self, key: str) -> None:
        entry = await self.find_file(key)
        if entry is None:
            return
        response = await self._request(
            "POST", f"{API_URL}/files/delete_v2", json={"path": entry["path_lower"]}
        )
        if response.status_code == 409 and "not_found" in _error_summary(response):
            return
        self._raise_for_status(response, "delete")
        logger.debug("Deleted Dropbox file %s", entry["path_lower"])
