from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

"""Processing result models for one ingestion job.

ProcessingStats is the stats block embedded in the manifest. IngestionResult is the summary
returned to the task queue (and printed by the CLI) once a job reaches DONE.
"""

__all__ = [
    "ProcessingStats",
    "IngestionResult",
]


@dataclass(frozen=True)
class ProcessingStats:
    """Counters for the manifest stats block."""
    total_sheets: int  # sheets in the workbook
    sheets_processed: int  # breakdown sheet + asset sheets scanned without a sheet error
    main_sheet_rows: int
    images_found: int
    images_processed: int
    images_failed: int
    images_duplicate: int  # byte-identical to an image already stored in this job
    images_unassigned: int
    chunks_written: int
    chunks_failed: int
    style_count: int
    total_processing_time_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSheets": self.total_sheets,
            "sheetsProcessed": self.sheets_processed,
            "mainSheetRows": self.main_sheet_rows,
            "imagesFound": self.images_found,
            "imagesProcessed": self.images_processed,
            "imagesFailed": self.images_failed,
            "imagesDuplicate": self.images_duplicate,
            "imagesUnassigned": self.images_unassigned,
            "chunksWritten": self.chunks_written,
            "chunksFailed": self.chunks_failed,
            "styleCount": self.style_count,
            "totalProcessingTimeMs": self.total_processing_time_ms,
        }


@dataclass(frozen=True)
class IngestionResult:
    """Summary of a completed ingestion job."""
    estimation_id: str
    manifest_key: str
    main_data_key: str
    main_sheet_name: str
    main_sheet_rows: int
    main_sheet_columns: int
    assets_total: int
    assets_by_concept: int  # distinct concept codes with at least one asset
    assets_unassigned: int
    stats: ProcessingStats
    error_count: int = 0
    warning_count: int = 0
    job_id: str | None = None
    states: list[str] = field(default_factory=list)  # visited states, in order

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "jobId": self.job_id,
            "estimationId": self.estimation_id,
            "manifestKey": self.manifest_key,
            "mainDataKey": self.main_data_key,
            "mainSheet": {
                "name": self.main_sheet_name,
                "rowCount": self.main_sheet_rows,
                "columnCount": self.main_sheet_columns,
            },
            "assets": {
                "total": self.assets_total,
                "byConcept": self.assets_by_concept,
                "unassigned": self.assets_unassigned,
            },
            "stats": self.stats.to_dict(),
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "states": list(self.states),
        }
