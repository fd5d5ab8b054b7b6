from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from wbs_ingest.config.loader import AppConfig
from wbs_ingest.excel.styles import StyleTable
from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.models.job import IngestionJob, InvalidTransitionError, JobState

"""Per-job context.

Everything a job accumulates (style table, error log, state history, cancellation flag)
lives on one JobContext created by the orchestrator, so concurrent jobs in one worker
process never share mutable state.
"""

__all__ = [
    "JobContext",
    "JobCancelled",
    "ProgressCallback",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class JobCancelled(Exception):
    """Raised between stages when the job's cancel event is set."""


@dataclass
class JobContext:
    job: IngestionJob
    config: AppConfig
    style_table: StyleTable = field(default_factory=StyleTable)
    error_log: ErrorLogBuffer = field(default_factory=ErrorLogBuffer)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_progress: ProgressCallback | None = None
    state: JobState = JobState.PENDING
    history: list[JobState] = field(default_factory=list)

    def advance(self, target: JobState) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: The transition is not allowed from the current state
        """
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(f"{self.state.value} -> {target.value} is not allowed")
        logger.debug("job %s: %s -> %s", self.job.estimation_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        self.advance(JobState.FAILED)

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(f"job {self.job.estimation_id} cancelled in {self.state.value}")

    def report(self, percent: int, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(max(0, min(100, percent)), message)

    @property
    def state_names(self) -> list[str]:
        return [s.value for s in self.history]
