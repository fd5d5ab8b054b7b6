from __future__ import annotations

import re
import zipfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from openpyxl.drawing.spreadsheet_drawing import SpreadsheetDrawing
from openpyxl.packaging.relationship import Relationship, get_dependents, get_rels_path
from openpyxl.packaging.workbook import WorkbookPackage
from openpyxl.workbook.workbook import Workbook
from openpyxl.xml.functions import fromstring

from wbs_ingest.excel.reader import CODE_PATTERN, cell_reference, normalize_code

"""xlsx drawing-part walker and anchor-to-concept resolution.

The package is walked part by part (workbook -> sheet rels -> drawing -> image media) with
openpyxl's packaging and DrawingML classes, so images are located without loading any
worksheet or image into memory. Media bytes are read one member at a time by the caller.

Anchor coordinates in ``xdr:from`` are 0-based; everything exposed here is 1-based.
"""

__all__ = [
    "DrawingPartError",
    "SheetPart",
    "ImageAnchor",
    "DrawingScan",
    "list_sheet_parts",
    "scan_sheet_drawings",
    "read_media",
    "CodeCellIndex",
    "code_from_sheet_name",
]

WORKBOOK_PART = "xl/workbook.xml"
SHEET_NAME_CODE = re.compile(r"^\s*(\d+(?:\.\d+)*)\.?(?=[\s_\-]|$)")
ANCHOR_KINDS = ("twoCellAnchor", "oneCellAnchor", "absoluteAnchor")

# missing member / malformed XML (stdlib or lxml) / schema mismatch in openpyxl's classes
_PART_ERRORS = (KeyError, SyntaxError, TypeError, ValueError)


class DrawingPartError(Exception):
    """A workbook, relationship or drawing part is missing or malformed."""


@dataclass(frozen=True)
class SheetPart:
    name: str
    index: int  # 0-based workbook order
    path: str  # e.g. "xl/worksheets/sheet2.xml"


@dataclass(frozen=True)
class ImageAnchor:
    """One anchored picture: where it sits and which media part holds its bytes."""
    sheet_name: str
    sheet_index: int
    row: int  # 1-based
    col: int  # 1-based
    media_path: str
    anchor_kind: str  # "oneCellAnchor" | "twoCellAnchor"

    @property
    def cell_ref(self) -> str:
        return cell_reference(self.row, self.col)


@dataclass
class DrawingScan:
    anchors: list[ImageAnchor] = field(default_factory=list)
    absolute: list[str] = field(default_factory=list)  # media paths of absoluteAnchor pictures
    broken: list[str] = field(default_factory=list)  # unresolvable picture references


def _dependents(zf: zipfile.ZipFile, part: str) -> dict[str, Relationship]:
    """``{rId: Relationship}`` with package-absolute targets; empty when the part has no rels."""
    try:
        rels = get_dependents(zf, get_rels_path(part))
    except KeyError:
        return {}
    return {rel.Id: rel for rel in rels if rel.TargetMode != "External"}


def list_sheet_parts(zf: zipfile.ZipFile) -> list[SheetPart]:
    """Worksheets of the package in workbook order (chartsheets are skipped).

    Raises:
        DrawingPartError: workbook.xml or its rels part is missing or malformed
    """
    try:
        package = WorkbookPackage.from_tree(fromstring(zf.read(WORKBOOK_PART)))
        rels = _dependents(zf, WORKBOOK_PART)
    except _PART_ERRORS as e:
        raise DrawingPartError(f"{WORKBOOK_PART}: {e}") from e
    parts: list[SheetPart] = []
    for index, sheet in enumerate(package.sheets):
        rel = rels.get(sheet.id)
        if rel is None or not rel.Type.endswith("/worksheet"):
            continue
        parts.append(SheetPart(name=sheet.name, index=index, path=rel.target))
    return parts


def _blip_embeds(anchor: Any) -> list[str]:
    pictures = [anchor.pic]
    if anchor.grpSp is not None:
        pictures.append(anchor.grpSp.pic)
    embeds = []
    for pic in pictures:
        if pic is None or pic.blipFill is None or pic.blipFill.blip is None:
            continue
        embeds.append(pic.blipFill.blip.embed or "")
    return embeds


def _image_target(rels: dict[str, Relationship], embed: str) -> str | None:
    rel = rels.get(embed)
    return rel.target if rel is not None and rel.Type.endswith("/image") else None


def scan_sheet_drawings(zf: zipfile.ZipFile, sheet: SheetPart) -> DrawingScan:
    """Collect the picture anchors of one worksheet.

    Raises:
        DrawingPartError: A referenced drawing part is missing or malformed
    """
    scan = DrawingScan()
    try:
        sheet_rels = _dependents(zf, sheet.path)
    except _PART_ERRORS as e:
        raise DrawingPartError(f"{sheet.path}: {e}") from e
    for rel in sheet_rels.values():
        if not rel.Type.endswith("/drawing"):
            continue
        drawing_part = rel.target
        try:
            drawing = SpreadsheetDrawing.from_tree(fromstring(zf.read(drawing_part)))
            drawing_rels = _dependents(zf, drawing_part)
        except _PART_ERRORS as e:
            raise DrawingPartError(f"{drawing_part}: {e}") from e
        for kind in ANCHOR_KINDS:
            for anchor in getattr(drawing, kind):
                targets = [_image_target(drawing_rels, embed) for embed in _blip_embeds(anchor)]
                if not targets:
                    continue
                if kind == "absoluteAnchor":
                    scan.absolute.extend(t or "?" for t in targets)
                    continue
                marker = anchor._from
                for media_path in targets:
                    if media_path is None or marker is None:
                        scan.broken.append(f"{drawing_part}:{kind}")
                        continue
                    scan.anchors.append(
                        ImageAnchor(
                            sheet_name=sheet.name,
                            sheet_index=sheet.index,
                            row=marker.row + 1,
                            col=marker.col + 1,
                            media_path=media_path,
                            anchor_kind=kind,
                        )
                    )
    return scan


def read_media(zf: zipfile.ZipFile, media_path: str) -> bytes:
    return zf.read(media_path)


def code_from_sheet_name(sheet_name: str) -> str | None:
    """Leading dotted code of a sheet name (``"5.2 Fotos"`` -> ``"5.2"``)."""
    match = SHEET_NAME_CODE.match(sheet_name)
    return match.group(1) if match else None


class CodeCellIndex:
    """Sparse index of code-bearing cells, restricted to anchor rows and columns.

    Text and numeric cells both count (``5.2`` typed as a number is the code ``"5.2"``).

    Only cells that share a row or a column with at least one anchor are kept, so the index
    size is bounded by the anchors rather than by the sheet.
    """

    def __init__(self, rows: Iterable[int], cols: Iterable[int]) -> None:
        self._rows: set[int] = set(rows)
        self._cols: set[int] = set(cols)
        self._by_row: dict[int, dict[int, str]] = {}
        self._by_col: dict[int, dict[int, str]] = {}

    @classmethod
    def from_worksheet(cls, wb: Workbook, sheet_name: str, anchors: Iterable[ImageAnchor]) -> CodeCellIndex:
        """Build the index by streaming a read-only (``data_only``) worksheet once."""
        anchors = list(anchors)
        index = cls((a.row for a in anchors), (a.col for a in anchors))
        if not anchors:
            return index
        ws = wb[sheet_name]
        ws.reset_dimensions()
        for r, values in enumerate(ws.iter_rows(values_only=True), start=1):
            for c, value in enumerate(values, start=1):
                if isinstance(value, (str, int, float)):
                    index.add(r, c, value)
        return index

    def add(self, row: int, col: int, value: Any) -> None:
        if row not in self._rows and col not in self._cols:
            return
        code = normalize_code(value)
        if not code or not CODE_PATTERN.fullmatch(code):
            return
        if row in self._rows:
            self._by_row.setdefault(row, {})[col] = code
        if col in self._cols:
            self._by_col.setdefault(col, {})[row] = code

    def resolve(self, anchor: ImageAnchor) -> str | None:
        """Owning code for an anchor: same row first, then same column, then sheet name.

        Same row: closest column, left wins ties. Same column: closest row, above wins ties.
        """
        in_row = self._by_row.get(anchor.row)
        if in_row:
            col = min(in_row, key=lambda c: (abs(c - anchor.col), c))
            return in_row[col]
        in_col = self._by_col.get(anchor.col)
        if in_col:
            row = min(in_col, key=lambda r: (abs(r - anchor.row), r))
            return in_col[row]
        return code_from_sheet_name(anchor.sheet_name)

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_row.values()) + sum(len(v) for v in self._by_col.values())
