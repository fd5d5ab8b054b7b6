from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.job import JobStatus as RqJobStatus

from wbs_ingest.config.loader import QueueConfig
from wbs_ingest.models.job import IngestionJob

"""Task queue client.

Jobs get the deterministic id ``ingest-{estimationId}``. ``enqueue`` refuses while a job
with that id is still queued or running, which serializes ingestion per estimation; once
the previous job has finished or failed, enqueueing replaces it. Whole-job retries (e.g.
after a manifest write failure) are left to rq's Retry.
"""

__all__ = [
    "QueueError",
    "JobAlreadyActiveError",
    "JobNotFoundError",
    "JobStatus",
    "TaskQueue",
    "job_id_for",
]

logger = logging.getLogger(__name__)

TASK_PATH = "wbs_ingest.queue.tasks.ingest_task"
ACTIVE_STATES = frozenset(
    {RqJobStatus.QUEUED, RqJobStatus.STARTED, RqJobStatus.DEFERRED, RqJobStatus.SCHEDULED}
)
RETRY_INTERVALS = [30, 120]


class QueueError(Exception):
    """The queue backend is unreachable or rejected the request."""


class JobAlreadyActiveError(QueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} is already queued or running")
        self.job_id = job_id


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


def job_id_for(estimation_id: str) -> str:
    return f"ingest-{estimation_id}"


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    state: str  # rq status: queued | started | finished | failed | ...
    progress: int = 0
    message: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "state": self.state,
            "progress": self.progress,
            "message": self.message,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


class TaskQueue:
    def __init__(self, config: QueueConfig, connection: Redis | None = None) -> None:
        self.config = config
        self.connection = connection if connection is not None else Redis.from_url(config.redis_url)
        self.queue = Queue(config.name, connection=self.connection)

    def _fetch(self, job_id: str) -> Job | None:
        try:
            return Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None

    def enqueue(self, job: IngestionJob) -> str:
        """Enqueue an ingestion job and return its id.

        Raises:
            JobAlreadyActiveError: A job for the same estimation is queued or running
            QueueError: Redis is unreachable
        """
        job_id = job_id_for(job.estimation_id)
        try:
            existing = self._fetch(job_id)
            if existing is not None:
                if existing.get_status() in ACTIVE_STATES:
                    raise JobAlreadyActiveError(job_id)
                existing.delete()
            payload = IngestionJob(
                estimation_id=job.estimation_id,
                source_key=job.source_key,
                job_id=job_id,
                original_filename=job.original_filename,
                user_id=job.user_id,
            ).to_dict()
            rq_job = self.queue.enqueue(
                TASK_PATH,
                payload,
                job_id=job_id,
                job_timeout=self.config.job_timeout,
                result_ttl=self.config.result_ttl,
                failure_ttl=self.config.result_ttl,
                retry=Retry(max=len(RETRY_INTERVALS), interval=RETRY_INTERVALS),
                meta={"progress": 0, "message": "queued"},
            )
        except RedisError as e:
            raise QueueError(f"failed to enqueue {job_id}: {e}") from e
        logger.info("enqueued %s (source=%s)", rq_job.id, job.source_key)
        return rq_job.id

    def get_status(self, job_id: str) -> JobStatus:
        """Current state, progress and result or error of a job.

        Raises:
            JobNotFoundError: Unknown or expired job id
            QueueError: Redis is unreachable
        """
        try:
            rq_job = self._fetch(job_id)
            if rq_job is None:
                raise JobNotFoundError(job_id)
            status = rq_job.get_status()
            state = status.value if isinstance(status, RqJobStatus) else str(status)
            meta = rq_job.get_meta(refresh=True)
            result = rq_job.return_value() if status == RqJobStatus.FINISHED else None
            error = None
            if status == RqJobStatus.FAILED:
                latest = rq_job.latest_result()
                error = latest.exc_string if latest is not None else "job failed"
        except RedisError as e:
            raise QueueError(f"failed to read {job_id}: {e}") from e
        return JobStatus(
            job_id=job_id,
            state=state,
            progress=int(meta.get("progress", 100 if status == RqJobStatus.FINISHED else 0)),
            message=meta.get("message"),
            result=result,
            error=error,
        )

    def cancel(self, job_id: str) -> None:
        """Cancel a queued job, or ask a running one to stop at its next stage boundary."""
        try:
            rq_job = self._fetch(job_id)
            if rq_job is None:
                raise JobNotFoundError(job_id)
            status = rq_job.get_status()
            if status == RqJobStatus.STARTED:
                rq_job.meta["cancel_requested"] = True
                rq_job.save_meta()
            elif status in ACTIVE_STATES:
                rq_job.cancel()
        except RedisError as e:
            raise QueueError(f"failed to cancel {job_id}: {e}") from e
