from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

"""Ingestion job models: the job payload and its state machine.

State transitions:
    DOWNLOADING → EXTRACTING → ASSET_PROCESSING → CHUNKING → UPLOADING → FINALIZING → DONE
    DOWNLOADING | EXTRACTING → FAILED

Only the first two stages can fail the job; every later stage degrades to partial success.
"""

__all__ = [
    "JobState",
    "IngestionJob",
    "InvalidTransitionError",
    "IngestionError",
    "processed_prefix",
]


class InvalidTransitionError(Exception):
    """Raised when a job attempts a transition the state machine does not allow."""


class IngestionError(Exception):
    """Fatal ingestion failure. Raised only from DOWNLOADING or EXTRACTING; moves the job to FAILED."""


class JobState(Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    ASSET_PROCESSING = "asset_processing"
    CHUNKING = "chunking"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)

    def can_transition_to(self, target: JobState) -> bool:
        return target in _TRANSITIONS.get(self, frozenset())


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.DOWNLOADING}),
    JobState.DOWNLOADING: frozenset({JobState.EXTRACTING, JobState.FAILED}),
    JobState.EXTRACTING: frozenset({JobState.ASSET_PROCESSING, JobState.FAILED}),
    JobState.ASSET_PROCESSING: frozenset({JobState.CHUNKING}),
    JobState.CHUNKING: frozenset({JobState.UPLOADING}),
    JobState.UPLOADING: frozenset({JobState.FINALIZING}),
    JobState.FINALIZING: frozenset({JobState.DONE}),
}


def processed_prefix(estimation_id: str) -> str:
    """Job-scoped storage prefix; retries of the same estimation overwrite the same keys."""
    return f"processed/{estimation_id}"


@dataclass(frozen=True)
class IngestionJob:
    """Payload of one ingestion job as carried by the task queue."""
    estimation_id: str
    source_key: str  # blob-store key of the uploaded workbook
    job_id: str | None = None
    original_filename: str | None = None
    user_id: str = "anonymous"

    @property
    def filename(self) -> str:
        return self.original_filename or PurePosixPath(self.source_key).name

    @property
    def output_prefix(self) -> str:
        return processed_prefix(self.estimation_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimationId": self.estimation_id,
            "sourceKey": self.source_key,
            "jobId": self.job_id,
            "originalFilename": self.original_filename,
            "userId": self.user_id,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> IngestionJob:
        return IngestionJob(
            estimation_id=str(data["estimationId"]),
            source_key=str(data["sourceKey"]),
            job_id=data.get("jobId"),
            original_filename=data.get("originalFilename"),
            user_id=data.get("userId") or "anonymous",
        )
