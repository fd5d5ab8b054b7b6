"""Domain models for the WBS workbook ingestion pipeline.

This package contains the records produced and consumed by every stage: cell values,
breakdown rows, style descriptors, concept nodes, asset records, chunks, job state and
processing errors.
"""

from .asset_record import AssetRecord, AssetType
from .breakdown_row import BreakdownRow, ColumnDefinition, ColumnType
from .cell_value import CellKind, CellValue
from .chunk import ChunkRef, ChunkWindow
from .concept_node import ConceptNode, NodeKind
from .error_record import ErrorType, ProcessingError, Severity
from .job import IngestionError, IngestionJob, InvalidTransitionError, JobState
from .processing_result import IngestionResult, ProcessingStats
from .style import StyleDescriptor

__all__ = [
    # Row data
    "CellKind",
    "CellValue",
    "BreakdownRow",
    "ColumnDefinition",
    "ColumnType",
    "StyleDescriptor",
    # Hierarchy / assets / chunks
    "ConceptNode",
    "NodeKind",
    "AssetRecord",
    "AssetType",
    "ChunkWindow",
    "ChunkRef",
    # Job processing
    "ErrorType",
    "Severity",
    "ProcessingError",
    "IngestionError",
    "IngestionJob",
    "InvalidTransitionError",
    "JobState",
    "IngestionResult",
    "ProcessingStats",
]
