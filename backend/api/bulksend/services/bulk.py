"""Bulk send: one source PDF fanned out into a signable copy per recipient.

``BatchCoordinator.process_batch`` only ever picks up items that are still
``pending``, so it can be re-run after a crash or a partial run and simply
continues. Items are processed concurrently up to a fixed ceiling; a failing
item is recorded as ``error`` and never aborts its siblings. Once every item
task has settled, the batch status is recomputed from the persisted item
rows rather than from in-memory tallies.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from ..config import Settings
from ..errors import BatchNotFoundError
from ..models import (
    AuditEventType,
    BatchStatus,
    BulkBatch,
    BulkItem,
    FieldPlacement,
    ItemStatus,
    NewAuditEvent,
    NewDocument,
    NewSigner,
    SenderProfile,
    StatusCounts,
)
from .repository import BulkRepository, Notifier
from .storage import StorageBackend

logger = logging.getLogger(__name__)

CONCURRENCY_LIMIT = 5
PDF_CONTENT_TYPE = "application/pdf"
TOKEN_BYTES = 24


class BatchOutcome(BaseModel):
    """Status and item counts persisted at the end of a run."""

    batch_id: str
    status: BatchStatus
    counts: StatusCounts


def resolve_batch_status(counts: StatusCounts) -> BatchStatus:
    """Batch status as a pure function of its item counts."""
    if counts.pending > 0:
        # Only happens when an item could not even record its failure
        return BatchStatus.PROCESSING
    if counts.error == counts.total:
        return BatchStatus.FAILED
    if counts.error > 0:
        return BatchStatus.PARTIAL
    return BatchStatus.COMPLETED


def _pick(field: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = field.get(name)
        if value not in (None, ""):
            return value
    return None


def bind_fields(fields_json: Any, signer_id: str) -> list[FieldPlacement]:
    """Attach the batch's field template to one recipient's signer."""
    if not isinstance(fields_json, list):
        return []

    placements = []
    for index, field in enumerate(fields_json):
        if not isinstance(field, dict):
            continue
        field_id = _pick(field, "id") or f"field-{index}"
        placements.append(
            FieldPlacement(
                id=str(field_id),
                field_type=_pick(field, "fieldType", "field_type") or "signature",
                signer_id=signer_id,
                page=_pick(field, "page") or 1,
                x=_pick(field, "x") or 0,
                y=_pick(field, "y") or 0,
                width=_pick(field, "width") or 200,
                height=_pick(field, "height") or 50,
                required=field.get("required") is not False,
                label=_pick(field, "label") or "",
                api_tag=_pick(field, "apiTag", "api_tag") or str(field_id),
            )
        )
    return placements


@dataclass(frozen=True, slots=True)
class _BatchRun:
    """Values resolved once per batch and shared read-only by item tasks."""

    batch: BulkBatch
    source_pdf: bytes
    original_hash: str
    sender: SenderProfile | None


class BatchCoordinator:
    """Dispatches the pending items of a bulk batch."""

    def __init__(
        self,
        repository: BulkRepository,
        notifier: Notifier,
        storage: StorageBackend,
        *,
        base_url: str,
        concurrency: int = CONCURRENCY_LIMIT,
        item_timeout: float | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.repository = repository
        self.notifier = notifier
        self.storage = storage
        self.base_url = base_url.rstrip("/")
        self.concurrency = concurrency
        self.item_timeout = item_timeout or None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: BulkRepository,
        notifier: Notifier,
        storage: StorageBackend,
    ) -> BatchCoordinator:
        return cls(
            repository,
            notifier,
            storage,
            base_url=settings.base_url,
            concurrency=settings.bulk_concurrency,
            item_timeout=settings.bulk_item_timeout_seconds,
        )

    async def process_batch(self, batch_id: str) -> BatchOutcome:
        """Send every pending item of the batch and persist the final status.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        logger.info("Starting bulk batch %s", batch_id, extra={"batch_id": batch_id})
        batch = await self.repository.get_bulk_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        pending = await self.repository.list_bulk_items(batch_id, ItemStatus.PENDING)
        logger.info("Found %d pending items in batch %s", len(pending), batch_id)

        if not pending:
            outcome = await self.finalize_batch(batch_id)
            logger.info(
                "Batch %s already processed with status %s (%d sent, %d errors)",
                batch_id,
                outcome.status.value,
                outcome.counts.sent,
                outcome.counts.error,
            )
            return outcome

        await self.repository.update_bulk_batch(batch_id, {"status": BatchStatus.PROCESSING})
        run = await self._prepare_run(batch)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(item: BulkItem) -> None:
            async with semaphore:
                await self._process_item_guarded(run, item)

        results = await asyncio.gather(*(worker(item) for item in pending), return_exceptions=True)
        for item, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Could not record outcome of item %s: %s",
                    item.id,
                    result,
                    extra={"batch_id": batch_id, "item_id": item.id},
                )

        outcome = await self.finalize_batch(batch_id)
        logger.info(
            "Batch %s finished with status %s (%d sent, %d errors, %d pending)",
            batch_id,
            outcome.status.value,
            outcome.counts.sent,
            outcome.counts.error,
            outcome.counts.pending,
            extra={"batch_id": batch_id},
        )
        return outcome

    async def recompute_batch_status(self, batch_id: str) -> BatchOutcome:
        """Repair a batch's status and counts without touching its items."""
        if await self.repository.get_bulk_batch(batch_id) is None:
            raise BatchNotFoundError(batch_id)
        outcome = await self.finalize_batch(batch_id)
        logger.info("Recomputed batch %s status: %s", batch_id, outcome.status.value)
        return outcome

    async def finalize_batch(self, batch_id: str) -> BatchOutcome:
        """Recompute the batch status and counts from the stored items."""
        items = await self.repository.list_bulk_items(batch_id)
        counts = StatusCounts.from_items(items)
        status = resolve_batch_status(counts)
        await self.repository.update_bulk_batch(
            batch_id,
            {
                "status": status,
                "total_count": counts.total,
                "sent_count": counts.sent,
                "error_count": counts.error,
                "pending_count": counts.pending,
            },
        )
        return BatchOutcome(batch_id=batch_id, status=status, counts=counts)

    # Internal helpers -------------------------------------------------

    async def _prepare_run(self, batch: BulkBatch) -> _BatchRun:
        source_pdf = await self.storage.download_buffer(batch.pdf_storage_key)
        sender = None
        if batch.user_id:
            sender = await self.repository.get_sender_profile(batch.user_id)
        return _BatchRun(
            batch=batch,
            source_pdf=source_pdf,
            original_hash=hashlib.sha256(source_pdf).hexdigest(),
            sender=sender,
        )

    async def _process_item_guarded(self, run: _BatchRun, item: BulkItem) -> None:
        try:
            if self.item_timeout:
                failure = await asyncio.wait_for(self._run_item(run, item), self.item_timeout)
            else:
                failure = await self._run_item(run, item)
        except asyncio.TimeoutError:
            # Only the coordinator's own deadline lands here; errors raised by
            # the item's steps come back from _run_item as values.
            message = f"Timed out after {self.item_timeout:g}s"
            logger.warning("Item %s: %s", item.id, message, extra={"item_id": item.id})
            await self._mark_error(item, message)
            return

        if failure is not None:
            logger.error(
                "Error processing item %s",
                item.id,
                exc_info=failure,
                extra={"batch_id": item.batch_id, "item_id": item.id},
            )
            await self._mark_error(item, str(failure) or failure.__class__.__name__)

    async def _run_item(self, run: _BatchRun, item: BulkItem) -> Exception | None:
        try:
            await self._process_item(run, item)
        except Exception as exc:
            return exc
        return None

    async def _mark_error(self, item: BulkItem, message: str) -> None:
        await self.repository.update_bulk_item(
            item.id, {"status": ItemStatus.ERROR, "error_message": message}
        )

    async def _process_item(self, run: _BatchRun, item: BulkItem) -> None:
        batch = run.batch
        logger.debug("Processing item %s for %s", item.id, item.recipient_email)

        signing_token = secrets.token_urlsafe(TOKEN_BYTES)
        signer_token = secrets.token_urlsafe(TOKEN_BYTES)
        signer_id = str(uuid.uuid4())
        unsigned_key = f"documents/{secrets.token_urlsafe(16)}/unsigned.pdf"

        storage_key = await self.storage.upload_buffer(
            run.source_pdf, unsigned_key, PDF_CONTENT_TYPE
        )
        fields = bind_fields(batch.fields_json, signer_id)

        document = await self.repository.create_document(
            NewDocument(
                user_id=batch.user_id,
                title=batch.title,
                signing_token=signing_token,
                unsigned_pdf_key=storage_key,
                original_hash=run.original_hash,
                data_json={
                    "title": batch.title,
                    "one_off_document": True,
                    "recipient_name": item.recipient_name,
                    "recipient_email": item.recipient_email,
                    "bulk_batch_id": batch.id,
                    "bulk_item_id": item.id,
                    "fields": [field.model_dump() for field in fields],
                    "signers": [
                        {
                            "id": signer_id,
                            "email": item.recipient_email,
                            "name": item.recipient_name,
                        }
                    ],
                },
            )
        )
        await self.repository.create_document_signer(
            NewSigner(
                id=signer_id,
                document_id=document.id,
                email=item.recipient_email,
                name=item.recipient_name,
                token=signer_token,
            )
        )
        await self.repository.create_audit_event(
            NewAuditEvent(
                document_id=document.id,
                event=AuditEventType.DOCUMENT_CREATED,
                meta_json={"bulk_batch_id": batch.id, "bulk_item_id": item.id},
            )
        )

        signing_url = f"{self.base_url}/d/{document.id}?token={signer_token}"
        await self.notifier.send_signature_request(
            document_id=document.id,
            recipient_email=item.recipient_email,
            recipient_name=item.recipient_name,
            signing_url=signing_url,
            title=batch.title,
            sender=run.sender,
        )
        await self.repository.create_audit_event(
            NewAuditEvent(
                document_id=document.id,
                event=AuditEventType.EMAIL_SENT,
                meta_json={"recipient_email": item.recipient_email},
            )
        )

        await self.repository.update_bulk_item(
            item.id,
            {"status": ItemStatus.SENT, "envelope_id": document.id, "error_message": None},
        )
        logger.info(
            "Processed item %s - document %s",
            item.id,
            document.id,
            extra={"batch_id": batch.id, "item_id": item.id, "document_id": document.id},
        )
