"""Service exports for the bulk send backend."""

from .bulk import BatchCoordinator, BatchOutcome, bind_fields, resolve_batch_status
from .repository import BulkRepository, Notifier
from .storage import StorageBackend, create_storage, create_user_storage

__all__ = [
    "BatchCoordinator",
    "BatchOutcome",
    "BulkRepository",
    "Notifier",
    "StorageBackend",
    "bind_fields",
    "create_storage",
    "create_user_storage",
    "resolve_batch_status",
]
