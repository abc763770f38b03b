"""Records exchanged between the bulk coordinator and its repository."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BatchStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class AuditEventType(str, Enum):
    DOCUMENT_CREATED = "document_created"
    EMAIL_SENT = "email_sent"


class FieldPlacement(BaseModel):
    """One field of the batch template, bound to a concrete signer."""

    id: str
    field_type: str = "signature"
    signer_id: str
    page: int = 1
    x: float = 0
    y: float = 0
    width: float = 200
    height: float = 50
    required: bool = True
    label: str = ""
    api_tag: str | None = None


class BulkBatch(BaseModel):
    id: str
    user_id: str | None = None
    file_name: str = ""
    title: str
    status: BatchStatus = BatchStatus.DRAFT
    total_count: int = 0
    sent_count: int = 0
    error_count: int = 0
    pending_count: int = 0
    pdf_storage_key: str
    # Raw field definitions as entered in the editor; bound per signer at dispatch
    fields_json: list[dict[str, Any]] | None = None
    created_at: datetime | None = None


class BulkItem(BaseModel):
    id: str
    batch_id: str
    recipient_name: str
    recipient_email: str
    status: ItemStatus = ItemStatus.PENDING
    envelope_id: str | None = None
    error_message: str | None = None


class StatusCounts(BaseModel):
    """Item status tally for one batch."""

    total: int = 0
    sent: int = 0
    error: int = 0
    pending: int = 0

    @classmethod
    def from_items(cls, items: list[BulkItem]) -> StatusCounts:
        counts = cls(total=len(items))
        for item in items:
            if item.status == ItemStatus.SENT:
                counts.sent += 1
            elif item.status == ItemStatus.ERROR:
                counts.error += 1
            elif item.status == ItemStatus.PENDING:
                counts.pending += 1
        return counts


class SenderProfile(BaseModel):
    """Display metadata of the batch owner shown in the notification."""

    name: str | None = None
    verified: bool = False


class NewDocument(BaseModel):
    user_id: str | None
    title: str
    status: str = "sent"
    signing_token: str
    unsigned_pdf_key: str
    original_hash: str
    data_json: dict[str, Any] = Field(default_factory=dict)


class DocumentRecord(BaseModel):
    id: str
    signing_token: str
    unsigned_pdf_key: str


class NewSigner(BaseModel):
    id: str
    document_id: str
    email: str
    name: str
    role: str = "signer"
    token: str
    status: str = "pending"
    order_index: int = 0


class NewAuditEvent(BaseModel):
    document_id: str
    event: AuditEventType
    ip: str | None = None
    user_agent: str = "BulkProcessor"
    meta_json: dict[str, Any] = Field(default_factory=dict)
