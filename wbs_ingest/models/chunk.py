from __future__ import annotations

from dataclasses import dataclass
from typing import Any

"""Chunk models.

ChunkWindow is the planned row range; ChunkRef is the stored object as listed in the
manifest. Ranges are half-open: ``start_row`` inclusive, ``end_row`` exclusive.
"""

__all__ = [
    "ChunkWindow",
    "ChunkRef",
]


@dataclass(frozen=True)
class ChunkWindow:
    index: int
    start_row: int
    end_row: int

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row

    def contains(self, row_index: int) -> bool:
        return self.start_row <= row_index < self.end_row


@dataclass(frozen=True)
class ChunkRef:
    """A chunk persisted to the blob store."""
    sheet_id: str
    index: int
    start_row: int
    end_row: int
    key: str
    size_bytes: int

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheetId": self.sheet_id,
            "index": self.index,
            "startRow": self.start_row,
            "endRow": self.end_row,
            "rowCount": self.row_count,
            "key": self.key,
            "sizeBytes": self.size_bytes,
        }
