from __future__ import annotations

import logging
import time
import uuid

from fastapi import FastAPI, Request

from wbs_ingest import __version__
from wbs_ingest.api.errors import install_error_handlers
from wbs_ingest.api.routes import blobs, estimations, jobs
from wbs_ingest.config.loader import AppConfig, load_config
from wbs_ingest.queue.client import TaskQueue
from wbs_ingest.services.retrieval import RetrievalService
from wbs_ingest.storage.blob_store import BlobStore, create_blob_store

"""FastAPI application factory.

``create_app`` wires config, blob store, retrieval service and (lazily) the task queue
onto ``app.state``; routes pull them through the dependencies in ``api.deps``. Tests pass
an InMemoryBlobStore and a mocked queue instead of the configured backends.
"""

__all__ = [
    "create_app",
]

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    store: BlobStore | None = None,
    queue: TaskQueue | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Application config (``load_config()`` when omitted)
        store: Blob store override (built from ``config.storage`` when omitted)
        queue: Task queue override (created on first use when omitted)

    Returns:
        Configured FastAPI application instance.
    """
    config = config or load_config()
    store = store or create_blob_store(config.storage)

    app = FastAPI(
        title="WBS Ingest API",
        summary="Chunked retrieval of ingested cost-estimation workbooks.",
        version=__version__,
        openapi_tags=[
            {"name": "estimations", "description": "Main sheet data, concept tree, assets and ingest."},
            {"name": "jobs", "description": "Ingestion job status."},
            {"name": "blobs", "description": "Signed reads of stored artifacts."},
            {"name": "meta", "description": "Health check."},
        ],
    )
    app.state.config = config
    app.state.store = store
    app.state.retrieval = RetrievalService(store, config.retrieval)
    app.state.queue = queue

    @app.middleware("http")
    async def request_id_and_log(request: Request, call_next):
        """Attach a request id (echoed as X-Request-ID) and log each request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "method=%s path=%s status=%d duration_ms=%.1f rid=%s",
            request.method, request.url.path, response.status_code, duration_ms, request_id,
        )
        return response

    install_error_handlers(app)

    app.include_router(estimations.router)
    app.include_router(jobs.router)
    app.include_router(blobs.router)

    @app.get("/health", tags=["meta"], summary="Health check")
    def health() -> dict:
        return {"status": "ok", "version": __version__}

    return app
