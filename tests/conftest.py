"""In-memory collaborators for exercising the bulk coordinator."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from bulksend.config import Settings
from bulksend.errors import NotFoundError, StorageError
from bulksend.models import (
    BulkBatch,
    BulkItem,
    DocumentRecord,
    ItemStatus,
    NewAuditEvent,
    NewDocument,
    NewSigner,
    SenderProfile,
)

SOURCE_KEY = "uploads/source.pdf"
SOURCE_PDF = b"%PDF-1.7 bulk template"


class InMemoryRepository:
    def __init__(self):
        self.batches: dict[str, BulkBatch] = {}
        self.items: dict[str, BulkItem] = {}
        self.documents: list[NewDocument] = []
        self.signers: list[NewSigner] = []
        self.audit_events: list[NewAuditEvent] = []
        self.sender_profiles: dict[str, SenderProfile] = {}
        self.fail_documents_for: set[str] = set()

    def add_batch(self, batch_id: str, emails: list[str], **fields: Any) -> BulkBatch:
        values = {
            "id": batch_id,
            "user_id": "owner-1",
            "title": "Employment contract",
            "pdf_storage_key": SOURCE_KEY,
            "total_count": len(emails),
            "pending_count": len(emails),
        }
        values.update(fields)
        batch = BulkBatch(**values)
        self.batches[batch_id] = batch
        for index, email in enumerate(emails):
            item_id = f"{batch_id}-item-{index}"
            self.items[item_id] = BulkItem(
                id=item_id,
                batch_id=batch_id,
                recipient_name=email.split("@")[0].title(),
                recipient_email=email,
            )
        return batch

    def items_by_email(self, batch_id: str) -> dict[str, BulkItem]:
        return {
            item.recipient_email: item for item in self.items.values() if item.batch_id == batch_id
        }

    async def get_bulk_batch(self, batch_id: str) -> BulkBatch | None:
        return self.batches.get(batch_id)

    async def update_bulk_batch(self, batch_id: str, changes: Mapping[str, Any]) -> None:
        self.batches[batch_id] = self.batches[batch_id].model_copy(update=dict(changes))

    async def list_bulk_items(
        self, batch_id: str, status: ItemStatus | None = None
    ) -> list[BulkItem]:
        return [
            item
            for item in self.items.values()
            if item.batch_id == batch_id and (status is None or item.status == status)
        ]

    async def get_bulk_item(self, item_id: str) -> BulkItem | None:
        return self.items.get(item_id)

    async def update_bulk_item(self, item_id: str, changes: Mapping[str, Any]) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update=dict(changes))

    async def create_document(self, document: NewDocument) -> DocumentRecord:
        if document.data_json.get("recipient_email") in self.fail_documents_for:
            raise RuntimeError("documents table is read-only")
        self.documents.append(document)
        return DocumentRecord(
            id=f"doc-{len(self.documents)}",
            signing_token=document.signing_token,
            unsigned_pdf_key=document.unsigned_pdf_key,
        )

    async def create_document_signer(self, signer: NewSigner) -> None:
        self.signers.append(signer)

    async def create_audit_event(self, event: NewAuditEvent) -> None:
        self.audit_events.append(event)

    async def get_sender_profile(self, user_id: str) -> SenderProfile | None:
        return self.sender_profiles.get(user_id)


class RecordingNotifier:
    """Records sent requests; can fail or hang for chosen recipients."""

    def __init__(self, delay: float = 0):
        self.delay = delay
        self.fail_for: set[str] = set()
        self.hang_for: set[str] = set()
        self.raise_for: dict[str, Exception] = {}
        self.sent: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def send_signature_request(self, **request: Any) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            email = request["recipient_email"]
            if email in self.hang_for:
                await asyncio.sleep(60)
            if email in self.raise_for:
                raise self.raise_for[email]
            if email in self.fail_for:
                raise RuntimeError(f"SMTP rejected {email}")
            self.sent.append(request)
        finally:
            self.active -= 1


class MemoryStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {SOURCE_KEY: SOURCE_PDF}
        self.downloads = 0
        self.failing_uploads = 0

    async def upload_buffer(self, data: bytes, key: str, content_type: str) -> str:
        if self.failing_uploads:
            self.failing_uploads -= 1
            raise StorageError(f"Upload rejected: {key}")
        self.objects[key] = data
        return key

    async def download_buffer(self, key: str) -> bytes:
        self.downloads += 1
        if key not in self.objects:
            raise NotFoundError(f"Object not found: {key}")
        return self.objects[key]

    async def get_signed_download_url(self, key: str, ttl_seconds: int) -> str:
        return f"https://storage.example.com/{key}?ttl={ttl_seconds}"

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def get_private_object_dir(self) -> str:
        return ""


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        base_url="https://sign.example.com/",
        bulk_concurrency=5,
        bulk_item_timeout_seconds=5,
    )


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage():
    return MemoryStorage()
