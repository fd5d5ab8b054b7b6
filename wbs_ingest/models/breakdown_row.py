from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cell_value import CellValue

"""BreakdownRow and ColumnDefinition models.

A BreakdownRow is one line item of the breakdown sheet after extraction. The row index is
0-based over the rows that were kept (fully empty rows are skipped), so chunk windows can be
expressed as plain ``[start, end)`` ranges over it.
"""

__all__ = [
    "BreakdownRow",
    "ColumnDefinition",
    "ColumnType",
    "CONCEPT_CODE_FIELD",
]

CONCEPT_CODE_FIELD = "_conceptCode"


class ColumnType(Enum):
    """Inferred display type of a breakdown column."""
    TEXT = "text"
    NUMBER = "number"
    CURRENCY = "currency"
    STATUS = "status"


@dataclass(frozen=True)
class ColumnDefinition:
    """Column metadata derived once from the header row plus value sampling."""
    field: str  # Key used in row dicts
    header_name: str  # Display name (header text as written)
    type: ColumnType
    width: int  # Default width in pixels
    editable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "headerName": self.header_name,
            "type": self.type.value,
            "width": self.width,
            "editable": self.editable,
        }


@dataclass(frozen=True)
class BreakdownRow:
    """One extracted line item.

    Attributes:
        index: 0-based position among extracted rows
        cells: Column field -> CellValue, in header order, non-empty cells only
        concept_code: Dotted WBS code found in the row (None when absent)
        styles: Column field -> style id for cells with non-default formatting
        source_row: 1-based worksheet row number (for audit)
    """
    index: int
    cells: dict[str, CellValue]
    concept_code: str | None = None
    styles: dict[str, str] = field(default_factory=dict)
    source_row: int | None = None

    def to_plain(self) -> dict[str, Any]:
        """Row as ``{field: value}`` for grid consumers (plus ``_conceptCode``)."""
        data: dict[str, Any] = {name: cell.to_plain() for name, cell in self.cells.items()}
        if self.concept_code is not None:
            data[CONCEPT_CODE_FIELD] = self.concept_code
        return data

    def to_dict(self) -> dict[str, Any]:
        """Lossless form used in spool files and chunk objects."""
        data: dict[str, Any] = {
            "r": self.index,
            "cells": {name: cell.to_dict() for name, cell in self.cells.items()},
        }
        if self.styles:
            data["s"] = dict(self.styles)
        if self.concept_code is not None:
            data[CONCEPT_CODE_FIELD] = self.concept_code
        if self.source_row is not None:
            data["src"] = self.source_row
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> BreakdownRow:
        return BreakdownRow(
            index=int(data["r"]),
            cells={name: CellValue.from_dict(raw) for name, raw in data.get("cells", {}).items()},
            concept_code=data.get(CONCEPT_CODE_FIELD),
            styles=dict(data.get("s", {})),
            source_row=data.get("src"),
        )
