from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

"""CellValue tagged variant.

Every spreadsheet cell is classified exactly once, at extraction time, into one of
Empty | Number | Text | FormulaResult. Downstream stages (type inference, chunk
serialisation, retrieval) switch on ``kind`` instead of probing Python types again.
"""

__all__ = [
    "CellKind",
    "CellValue",
]


class CellKind(Enum):
    """Closed set of cell value kinds."""
    EMPTY = "empty"
    NUMBER = "number"
    TEXT = "text"
    FORMULA_RESULT = "formula"


# 直列化時の短縮タグ
_KIND_TAGS = {
    CellKind.EMPTY: "e",
    CellKind.NUMBER: "n",
    CellKind.TEXT: "s",
    CellKind.FORMULA_RESULT: "f",
}
_TAG_KINDS = {v: k for k, v in _KIND_TAGS.items()}


def _normalize_scalar(raw: Any) -> tuple[CellKind, Any]:
    """Classify a raw cell value (as returned by openpyxl) into (kind, value)."""
    if raw is None:
        return CellKind.EMPTY, None
    if isinstance(raw, bool):
        return CellKind.TEXT, "TRUE" if raw else "FALSE"
    if isinstance(raw, int):
        return CellKind.NUMBER, raw
    if isinstance(raw, float):
        if math.isnan(raw) or math.isinf(raw):
            return CellKind.EMPTY, None
        return CellKind.NUMBER, raw
    if isinstance(raw, Decimal):
        return CellKind.NUMBER, float(raw)
    if isinstance(raw, (datetime, date, time)):
        return CellKind.TEXT, raw.isoformat()
    text = str(raw)
    if text.strip() == "":
        return CellKind.EMPTY, None
    return CellKind.TEXT, text


@dataclass(frozen=True)
class CellValue:
    """A single extracted cell value.

    Attributes:
        kind: Variant tag
        value: Plain JSON-compatible value (number or text; None for Empty or an
            uncached formula result)
        formula: Formula text, only set for FORMULA_RESULT
    """
    kind: CellKind
    value: int | float | str | None = None
    formula: str | None = None

    @staticmethod
    def empty() -> CellValue:
        return _EMPTY

    @staticmethod
    def from_raw(raw: Any, formula: str | None = None) -> CellValue:
        """Build a CellValue from a raw cell value and an optional formula.

        Parameters:
            raw: Cached value of the cell (the formula result for formula cells)
            formula: Formula text (``=SUM(A1:A3)``) when the cell holds a formula

        Returns:
            Classified CellValue
        """
        kind, value = _normalize_scalar(raw)
        if formula:
            return CellValue(kind=CellKind.FORMULA_RESULT, value=value, formula=formula)
        if kind is CellKind.EMPTY:
            return _EMPTY
        return CellValue(kind=kind, value=value)

    @property
    def is_empty(self) -> bool:
        return self.kind is CellKind.EMPTY

    @property
    def is_numeric(self) -> bool:
        if self.kind is CellKind.NUMBER:
            return True
        return self.kind is CellKind.FORMULA_RESULT and isinstance(self.value, (int, float))

    def to_plain(self) -> int | float | str | None:
        return self.value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"t": _KIND_TAGS[self.kind], "v": self.value}
        if self.formula:
            data["f"] = self.formula
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CellValue:
        kind = _TAG_KINDS.get(data.get("t", "e"), CellKind.EMPTY)
        if kind is CellKind.EMPTY:
            return _EMPTY
        return CellValue(kind=kind, value=data.get("v"), formula=data.get("f"))


_EMPTY = CellValue(kind=CellKind.EMPTY)
