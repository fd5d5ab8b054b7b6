from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

"""AssetRecord model for images extracted from non-breakdown sheets."""

__all__ = [
    "AssetRecord",
    "AssetType",
]


class AssetType(Enum):
    """Asset category, derived from the name of the sheet the image lives on."""
    PHOTO = "photo"
    GENERATOR = "generator"
    SPEC = "spec"
    DETAIL = "detail"

    @staticmethod
    def from_sheet_name(sheet_name: str) -> AssetType:
        lowered = sheet_name.lower()
        if "foto" in lowered or "photo" in lowered:
            return AssetType.PHOTO
        if "generador" in lowered or "generator" in lowered:
            return AssetType.GENERATOR
        if "especificaci" in lowered or "spec" in lowered:
            return AssetType.SPEC
        return AssetType.DETAIL


@dataclass(frozen=True)
class AssetRecord:
    """One extracted, re-encoded and uploaded image.

    ``concept_code`` is None for images whose owner could not be resolved; they are kept in
    the manifest for audit but never returned by concept-keyed retrieval.
    """
    id: str
    concept_code: str | None
    type: AssetType
    source_sheet: str
    source_cell: str  # e.g. "C14"
    filename: str
    storage_path: str
    width: int
    height: int
    size_bytes: int
    format: str  # "webp"
    extracted_at: str  # ISO8601 UTC
    sheet_index: int = 0  # workbook order, used for deterministic sorting
    anchor_row: int = 0  # 1-based
    anchor_col: int = 0  # 1-based

    @property
    def is_assigned(self) -> bool:
        return self.concept_code is not None

    @property
    def sort_key(self) -> tuple[int, int, int, str]:
        return (self.sheet_index, self.anchor_row, self.anchor_col, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conceptCode": self.concept_code,
            "type": self.type.value,
            "sourceSheet": self.source_sheet,
            "sourceCell": self.source_cell,
            "filename": self.filename,
            "storagePath": self.storage_path,
            "width": self.width,
            "height": self.height,
            "sizeBytes": self.size_bytes,
            "format": self.format,
            "extractedAt": self.extracted_at,
        }
