from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any

from rq import get_current_job

from wbs_ingest.config.loader import AppConfig, load_config
from wbs_ingest.excel.reader import BreakdownSheetNotFound, WorkbookReadError
from wbs_ingest.models.job import IngestionJob
from wbs_ingest.services.context import JobCancelled
from wbs_ingest.services.orchestrator import SourceDownloadError, run_ingestion
from wbs_ingest.storage.blob_store import BlobNotFoundError, BlobStore, create_blob_store

"""rq task entry point (runs inside the worker process).

Progress is mirrored into ``job.meta`` (``progress``, ``message``) for status polling; a
``cancel_requested`` flag set by TaskQueue.cancel is picked up at the next stage boundary.

Failures that a re-run cannot fix (missing source, unreadable workbook, no breakdown sheet,
cancellation) clear the remaining rq retries before propagating, so the job ends FAILED
on the first attempt. Anything else keeps the retry schedule set at enqueue time.
"""

__all__ = [
    "ingest_task",
    "is_permanent_failure",
]

logger = logging.getLogger(__name__)


def ingest_task(
    payload: dict[str, Any],
    config: AppConfig | None = None,
    store: BlobStore | None = None,
) -> dict[str, Any]:
    """Run one ingestion job; the returned dict becomes the rq job result."""
    job = IngestionJob.from_dict(payload)
    config = config or load_config()
    store = store or create_blob_store(config.storage)
    cancel_event = threading.Event()
    rq_job = get_current_job()
    if rq_job is not None and job.job_id is None:
        job = replace(job, job_id=rq_job.id)

    def on_progress(percent: int, message: str) -> None:
        if rq_job is None:
            return
        if rq_job.get_meta(refresh=True).get("cancel_requested"):
            cancel_event.set()
        rq_job.meta["progress"] = percent
        rq_job.meta["message"] = message
        rq_job.save_meta()

    logger.info("task start: %s", job.estimation_id)
    try:
        result = run_ingestion(job, store, config, on_progress=on_progress, cancel_event=cancel_event)
    except (BreakdownSheetNotFound, WorkbookReadError, JobCancelled, SourceDownloadError) as e:
        if rq_job is not None and is_permanent_failure(e):
            logger.warning("task %s failed permanently, retries skipped: %s", job.estimation_id, e)
            rq_job.retries_left = 0
        raise
    return result.to_dict()


def is_permanent_failure(error: BaseException) -> bool:
    """True when running the same job again would fail the same way."""
    if isinstance(error, SourceDownloadError):
        return isinstance(error.__cause__, BlobNotFoundError)
    return isinstance(error, (BreakdownSheetNotFound, WorkbookReadError, JobCancelled))
