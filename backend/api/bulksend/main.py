"""FastAPI application exposing bulk batch dispatch endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, status

from .config import Settings
from .errors import BatchNotFoundError
from .log import setup_logging
from .services import BatchCoordinator, BatchOutcome, BulkRepository, Notifier
from .services.storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)


async def _run_batch(coordinator: BatchCoordinator, batch_id: str) -> None:
    # Nothing is left to answer once the 202 went out, so failures end here
    try:
        await coordinator.process_batch(batch_id)
    except Exception:
        logger.exception("Bulk batch %s failed", batch_id, extra={"batch_id": batch_id})


def create_app(
    settings: Settings,
    repository: BulkRepository,
    notifier: Notifier,
    storage: StorageBackend | None = None,
) -> FastAPI:
    """Build the API around explicitly provided collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings)
        backend = storage or create_storage(settings)
        verify_bucket = getattr(backend, "verify_bucket", None)
        if settings.s3_verify_on_startup and verify_bucket is not None:
            await verify_bucket()
        app.state.coordinator = BatchCoordinator.from_settings(
            settings, repository, notifier, backend
        )
        yield

    app = FastAPI(title="Bulk Send API", version="0.1.0", lifespan=lifespan)

    def coordinator_for(request: Request) -> BatchCoordinator:
        return request.app.state.coordinator

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Liveness check endpoint."""
        return {"status": "healthy"}

    @app.post("/batches/{batch_id}/process", status_code=status.HTTP_202_ACCEPTED)
    async def process_batch(
        batch_id: str, request: Request, background_tasks: BackgroundTasks
    ) -> dict[str, str]:
        """Queue dispatch of every pending item in the batch."""
        if await repository.get_bulk_batch(batch_id) is None:
            raise HTTPException(status_code=404, detail="Bulk batch not found")
        background_tasks.add_task(_run_batch, coordinator_for(request), batch_id)
        return {"batch_id": batch_id, "status": "accepted"}

    @app.post("/batches/{batch_id}/status")
    async def recompute_status(batch_id: str, request: Request) -> BatchOutcome:
        """Recompute status and counts from the stored item rows."""
        try:
            return await coordinator_for(request).recompute_batch_status(batch_id)
        except BatchNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    return app
