"""Persistence and notification interfaces consumed by the bulk coordinator."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from ..models import (
    BulkBatch,
    BulkItem,
    DocumentRecord,
    ItemStatus,
    NewAuditEvent,
    NewDocument,
    NewSigner,
    SenderProfile,
)


class BulkRepository(Protocol):
    """Database access for batches, items and the documents they generate.

    Updates take a mapping of changed columns; unspecified columns keep
    their values.
    """

    async def get_bulk_batch(self, batch_id: str) -> BulkBatch | None:
        ...

    async def update_bulk_batch(self, batch_id: str, changes: Mapping[str, Any]) -> None:
        ...

    async def list_bulk_items(
        self, batch_id: str, status: ItemStatus | None = None
    ) -> list[BulkItem]:
        """Items of a batch, optionally only those with ``status``."""
        ...

    async def get_bulk_item(self, item_id: str) -> BulkItem | None:
        ...

    async def update_bulk_item(self, item_id: str, changes: Mapping[str, Any]) -> None:
        ...

    async def create_document(self, document: NewDocument) -> DocumentRecord:
        ...

    async def create_document_signer(self, signer: NewSigner) -> None:
        ...

    async def create_audit_event(self, event: NewAuditEvent) -> None:
        ...

    async def get_sender_profile(self, user_id: str) -> SenderProfile | None:
        """Display name and verification state of a batch owner."""
        ...


class Notifier(Protocol):
    """Sends the signature-request email for a generated document."""

    async def send_signature_request(
        self,
        *,
        document_id: str,
        recipient_email: str,
        recipient_name: str,
        signing_url: str,
        title: str,
        sender: SenderProfile | None = None,
    ) -> None:
        ...
