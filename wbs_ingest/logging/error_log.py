from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from wbs_ingest.models.error_record import ErrorType, ProcessingError, Severity

"""Append-only error log for one ingestion job.

The buffer is created per job (never module level) and threaded through every stage via the
job context. Asset uploads append from worker threads, so appends are guarded by a lock.
At the end of the job the records are embedded in the manifest (``snapshot``); the CLI can
additionally flush them as JSON Lines to ``logs/errors-YYYYMMDD-HHMMSS.log``.
"""

__all__ = [
    "ProcessingError",
    "ErrorLogBuffer",
]

LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


class ErrorLogBuffer:
    """In-memory, append-only buffer of ProcessingError records."""

    def __init__(self, logs_dir: Path | None = None) -> None:
        self._records: list[ProcessingError] = []
        self._lock = threading.Lock()
        self._logs_dir = logs_dir or LOGS_DIR
        self._file_path: Path | None = None
        self._flushed = 0

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self._logs_dir / f"errors-{stamp}.log"
        return self._file_path

    def append(self, record: ProcessingError) -> None:
        with self._lock:
            self._records.append(record)

    def record(
        self,
        type: ErrorType,
        message: str,
        *,
        severity: Severity = Severity.ERROR,
        sheet: str | None = None,
        asset_id: str | None = None,
        chunk_index: int | None = None,
    ) -> ProcessingError:
        """Create, append and return a new record."""
        rec = ProcessingError.create(
            type,
            message,
            severity=severity,
            sheet=sheet,
            asset_id=asset_id,
            chunk_index=chunk_index,
        )
        self.append(rec)
        return rec

    def warn(self, type: ErrorType, message: str, **refs: object) -> ProcessingError:
        return self.record(type, message, severity=Severity.WARNING, **refs)  # type: ignore[arg-type]

    def snapshot(self) -> list[ProcessingError]:
        with self._lock:
            return list(self._records)

    @property
    def errors(self) -> list[ProcessingError]:
        return [r for r in self.snapshot() if r.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[ProcessingError]:
        return [r for r in self.snapshot() if r.severity is Severity.WARNING]

    def count(self, *types: ErrorType) -> int:
        """Count error-severity records, optionally restricted to the given types."""
        return sum(1 for r in self.errors if not types or r.type in types)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[ProcessingError]:
        return iter(self.snapshot())

    def flush(self) -> Path:
        """Append records not yet written to the JSON Lines file. Records stay in memory."""
        with self._lock:
            pending = self._records[self._flushed:]
            self._flushed = len(self._records)
        fp = self.file_path
        if not pending:
            return fp
        with fp.open("a", encoding="utf-8") as f:
            for r in pending:
                f.write(r.to_json_line() + "\n")
        return fp
