from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""ProcessingError model for partial-failure recording.

A ProcessingError describes one sub-failure inside an ingestion job (a sheet that could not
be scanned, an image that failed to convert or upload, a chunk that could not be written).
Records are accumulated by ErrorLogBuffer during the job and embedded in the manifest; they
never abort the job by themselves.
"""

__all__ = [
    "ErrorType",
    "Severity",
    "ProcessingError",
]


class ErrorType(str, Enum):
    SHEET_PROCESSING = "sheet_processing"
    IMAGE_EXTRACTION = "image_extraction"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CONVERSION = "conversion"
    CHUNKING = "chunking"
    HIERARCHY = "hierarchy"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# Error types that count against imagesFailed
IMAGE_ERROR_TYPES = frozenset({ErrorType.IMAGE_EXTRACTION, ErrorType.CONVERSION, ErrorType.UPLOAD})


def utc_timestamp() -> str:
    """ISO8601 UTC timestamp with 'Z' suffix."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ProcessingError:
    """Structured sub-failure record.

    Attributes:
        type: Error classification
        message: Human readable description
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        severity: error (something was lost) or warning (data kept, but altered)
        sheet: Sheet name the failure relates to, if any
        asset_id: Asset id (or anchor reference) the failure relates to, if any
        chunk_index: Chunk index the failure relates to, if any
    """
    type: ErrorType
    message: str
    timestamp: str
    severity: Severity = Severity.ERROR
    sheet: str | None = None
    asset_id: str | None = None
    chunk_index: int | None = None

    @staticmethod
    def create(
        type: ErrorType,
        message: str,
        *,
        severity: Severity = Severity.ERROR,
        sheet: str | None = None,
        asset_id: str | None = None,
        chunk_index: int | None = None,
    ) -> ProcessingError:
        """Create a new ProcessingError stamped with the current UTC time."""
        return ProcessingError(
            type=type,
            message=message,
            timestamp=utc_timestamp(),
            severity=severity,
            sheet=sheet,
            asset_id=asset_id,
            chunk_index=chunk_index,
        )

    @property
    def is_image_failure(self) -> bool:
        return self.severity is Severity.ERROR and self.type in IMAGE_ERROR_TYPES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.sheet is not None:
            data["sheet"] = self.sheet
        if self.asset_id is not None:
            data["assetId"] = self.asset_id
        if self.chunk_index is not None:
            data["chunkIndex"] = self.chunk_index
        return data

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
