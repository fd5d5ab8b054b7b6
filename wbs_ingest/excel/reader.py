from __future__ import annotations

import json
import re
import zipfile
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook

from wbs_ingest.config.loader import IngestionConfig
from wbs_ingest.excel.styles import StyleTable
from wbs_ingest.models.breakdown_row import BreakdownRow, ColumnDefinition, ColumnType
from wbs_ingest.models.cell_value import CellKind, CellValue
from wbs_ingest.models.job import IngestionError

"""Streaming breakdown-sheet reader.

The breakdown sheet is read with two openpyxl read-only cursors advanced in lockstep:
one over formulas and styles, one over cached values (``data_only=True``). Each kept row is
written to a JSON Lines spool file as soon as it is built, so memory holds only the header,
the type-inference samples and whatever the ``on_row`` callback keeps.

Rules:
- First worksheet row = header row. Blank header -> ``ColumnN``; duplicates -> ``name_2``, ...
- Fully empty rows are skipped; kept rows get consecutive 0-based indexes
- Column types are inferred from at most ``type_sample_size`` non-empty values per column
"""

__all__ = [
    "BreakdownSheetNotFound",
    "WorkbookReadError",
    "ExtractedSheet",
    "BreakdownReader",
    "find_breakdown_sheet",
    "open_workbook",
    "list_sheet_names",
    "inspect_workbook",
    "normalize_code",
    "code_sort_key",
    "sheet_slug",
    "cell_reference",
    "CODE_PATTERN",
    "DOTTED_CODE_PATTERN",
]

CODE_PATTERN = re.compile(r"^\d+(\.\d+)*$")
DOTTED_CODE_PATTERN = re.compile(r"^\d+(\.\d+)+$")

CODE_HEADER_HINTS = ("clave", "código", "codigo", "code", "wbs", "partida")
LABEL_HEADER_HINTS = ("descripción", "descripcion", "description", "concepto", "nombre")
CURRENCY_SYMBOLS = ("$", "€")

MIN_COLUMN_WIDTH = 80
MAX_CONTENT_WIDTH = 300


class BreakdownSheetNotFound(IngestionError):
    """No sheet name matches any configured breakdown pattern."""


class WorkbookReadError(IngestionError):
    """The source file is not a readable xlsx workbook."""


def normalize_code(value: Any) -> str | None:
    """Normalize a raw cell value into a candidate concept code.

    ``5.0`` -> ``"5"``, ``"5.2."`` -> ``"5.2"``. Returns None when nothing code-like remains.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        text = str(int(value)) if value.is_integer() else repr(value)
    elif isinstance(value, int):
        text = str(value)
    else:
        text = str(value).strip()
    text = text.rstrip(".")
    return text or None


def code_sort_key(code: str) -> tuple[Any, ...]:
    """Natural sort key for dotted codes: ``5.9`` sorts before ``5.10``."""
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in code.split("."))


def sheet_slug(sheet_name: str) -> str:
    """Storage-safe sheet id (``"03 Desglose f"`` -> ``"03-desglose-f"``)."""
    slug = re.sub(r"[^0-9a-z]+", "-", sheet_name.lower()).strip("-")
    return slug or "sheet"


def find_breakdown_sheet(sheet_names: Sequence[str], patterns: Iterable[str]) -> str:
    """Pick the breakdown sheet by prioritized patterns.

    Pass 1 looks for an exact (case-insensitive) name match in pattern order; pass 2 for a
    case-insensitive substring match in pattern order.

    Raises:
        BreakdownSheetNotFound: When neither pass matches
    """
    ordered = list(patterns)
    lowered = [(name, name.strip().lower()) for name in sheet_names]
    for pattern in ordered:
        p = pattern.strip().lower()
        for name, low in lowered:
            if low == p:
                return name
    for pattern in ordered:
        p = pattern.strip().lower()
        for name, low in lowered:
            if p in low:
                return name
    raise BreakdownSheetNotFound(
        f"no breakdown sheet matching {ordered} (sheets: {list(sheet_names)})"
    )


def open_workbook(path: Path, *, data_only: bool = False) -> Workbook:
    """Open a workbook in read-only mode.

    Raises:
        WorkbookReadError: File missing, not a zip package or not an xlsx workbook
    """
    try:
        return load_workbook(path, read_only=True, data_only=data_only)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise WorkbookReadError(f"cannot open workbook {path.name}: {e}") from e


def list_sheet_names(path: Path) -> list[str]:
    wb = open_workbook(path)
    try:
        return list(wb.sheetnames)
    finally:
        wb.close()


def _header_name(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw).strip()


def _dedupe(name: str, position: int, seen: dict[str, int]) -> str:
    base = name or f"Column{position + 1}"
    count = seen.get(base, 0) + 1
    seen[base] = count
    if count == 1:
        return base
    candidate = f"{base}_{count}"
    while candidate in seen:
        count += 1
        candidate = f"{base}_{count}"
    seen[candidate] = 1
    return candidate


def _matches_hint(header: str, hints: Iterable[str]) -> bool:
    low = header.strip().lower()
    return any(low == h or low.startswith(h) for h in hints)


def _formula_text(value: Any) -> str | None:
    # ArrayFormula / DataTableFormula expose .text
    text = getattr(value, "text", value)
    if isinstance(text, str) and text.startswith("="):
        return text
    return None


@dataclass
class _ColumnSample:
    values: list[Any] = field(default_factory=list)
    max_len: int = 0
    currency_format: bool = False


@dataclass
class ExtractedSheet:
    """Result of extracting the breakdown sheet.

    Rows live in the spool file, one ``BreakdownRow.to_dict()`` JSON object per line.
    """
    sheet_name: str
    sheet_index: int
    sheet_id: str
    total_sheets: int
    columns: list[ColumnDefinition]
    row_count: int
    spool_path: Path
    code_field: str | None = None
    label_field: str | None = None
    coded_rows: int = 0
    sheet_names: list[str] = field(default_factory=list)

    def iter_rows(self, start: int = 0, end: int | None = None) -> Iterator[BreakdownRow]:
        """Stream rows with ``start <= index < end`` back from the spool."""
        with self.spool_path.open("r", encoding="utf-8") as f:
            for line in f:
                row = BreakdownRow.from_dict(json.loads(line))
                if row.index < start:
                    continue
                if end is not None and row.index >= end:
                    break
                yield row


RowCallback = Callable[[BreakdownRow, "str | None"], None]


class BreakdownReader:
    """Extracts the breakdown sheet of one workbook into a spool file."""

    def __init__(self, path: Path, config: IngestionConfig, style_table: StyleTable) -> None:
        self.path = path
        self.config = config
        self.style_table = style_table

    def extract(self, spool_path: Path, on_row: RowCallback | None = None) -> ExtractedSheet:
        """Stream the breakdown sheet into ``spool_path``.

        Args:
            spool_path: JSON Lines file to write (created or truncated)
            on_row: Called with ``(row, label)`` for every kept row

        Returns:
            ExtractedSheet describing the spooled rows

        Raises:
            WorkbookReadError: The workbook cannot be opened or parsed
            BreakdownSheetNotFound: No sheet matches the configured patterns
        """
        wb_formulas = open_workbook(self.path, data_only=False)
        try:
            wb_values = open_workbook(self.path, data_only=True)
        except WorkbookReadError:
            wb_formulas.close()
            raise
        try:
            sheet_names = list(wb_formulas.sheetnames)
            sheet_name = find_breakdown_sheet(sheet_names, self.config.sheet_patterns)
            ws_f = wb_formulas[sheet_name]
            ws_v = wb_values[sheet_name]
            ws_f.reset_dimensions()
            ws_v.reset_dimensions()
            try:
                return self._stream(
                    sheet_name,
                    sheet_names.index(sheet_name),
                    sheet_names,
                    zip(ws_f.iter_rows(), ws_v.iter_rows(), strict=False),
                    spool_path,
                    on_row,
                )
            except (zipfile.BadZipFile, KeyError, ValueError) as e:
                raise WorkbookReadError(f"failed to read sheet '{sheet_name}': {e}") from e
        finally:
            wb_formulas.close()
            wb_values.close()

    def _stream(
        self,
        sheet_name: str,
        sheet_index: int,
        sheet_names: list[str],
        rows: Iterator[tuple[Sequence[Any], Sequence[Any]]],
        spool_path: Path,
        on_row: RowCallback | None,
    ) -> ExtractedSheet:
        headers: list[str] = []
        display: list[str] = []
        seen: dict[str, int] = {}
        samples: list[_ColumnSample] = []
        code_idx: int | None = None
        label_idx: int | None = None
        row_count = 0
        coded = 0

        def extend(width: int) -> None:
            while len(headers) < width:
                pos = len(headers)
                headers.append(_dedupe("", pos, seen))
                display.append(headers[-1])
                samples.append(_ColumnSample())

        spool_path.parent.mkdir(parents=True, exist_ok=True)
        with spool_path.open("w", encoding="utf-8") as spool:
            first = True
            for source_row, (f_cells, v_cells) in enumerate(rows, start=1):
                if first:
                    first = False
                    for pos, v_cell in enumerate(v_cells):
                        raw = getattr(v_cell, "value", None)
                        if raw is None and pos < len(f_cells):
                            raw = getattr(f_cells[pos], "value", None)
                        name = _header_name(raw)
                        headers.append(_dedupe(name, pos, seen))
                        display.append(name or headers[-1])
                        samples.append(_ColumnSample())
                    code_idx = next(
                        (i for i, h in enumerate(display) if _matches_hint(h, CODE_HEADER_HINTS)),
                        0 if headers else None,
                    )
                    label_idx = next(
                        (i for i, h in enumerate(display) if _matches_hint(h, LABEL_HEADER_HINTS)),
                        None,
                    )
                    continue

                width = max(len(f_cells), len(v_cells))
                if width > len(headers):
                    extend(width)
                    if code_idx is None:
                        code_idx = 0

                cells: dict[str, CellValue] = {}
                styles: dict[str, str] = {}
                values: list[CellValue] = []
                for pos in range(width):
                    f_cell = f_cells[pos] if pos < len(f_cells) else None
                    v_cell = v_cells[pos] if pos < len(v_cells) else None
                    formula = _formula_text(getattr(f_cell, "value", None))
                    cached = getattr(v_cell, "value", None)
                    if formula is None and cached is None:
                        cached = getattr(f_cell, "value", None)
                    cell = CellValue.from_raw(cached, formula)
                    values.append(cell)
                    if cell.is_empty:
                        continue
                    name = headers[pos]
                    cells[name] = cell
                    if f_cell is not None:
                        style_id = self.style_table.internalize_cell(f_cell)
                        if style_id is not None:
                            styles[name] = style_id
                    self._sample(samples[pos], cell, f_cell)

                if not cells:
                    continue

                code = self._concept_code(values, code_idx)
                if code is not None:
                    coded += 1
                row = BreakdownRow(
                    index=row_count,
                    cells=cells,
                    concept_code=code,
                    styles=styles,
                    source_row=source_row,
                )
                spool.write(json.dumps(row.to_dict(), ensure_ascii=False) + "\n")
                if on_row is not None:
                    on_row(row, self._label(values, label_idx, code_idx, code))
                row_count += 1

        columns = [
            self._column_definition(name, shown, sample)
            for name, shown, sample in zip(headers, display, samples, strict=True)
        ]
        return ExtractedSheet(
            sheet_name=sheet_name,
            sheet_index=sheet_index,
            sheet_id=sheet_slug(sheet_name),
            total_sheets=len(sheet_names),
            columns=columns,
            row_count=row_count,
            spool_path=spool_path,
            code_field=headers[code_idx] if code_idx is not None and headers else None,
            label_field=headers[label_idx] if label_idx is not None else None,
            coded_rows=coded,
            sheet_names=list(sheet_names),
        )

    def _sample(self, sample: _ColumnSample, cell: CellValue, f_cell: Any) -> None:
        if len(sample.values) >= self.config.type_sample_size or cell.value is None:
            return
        sample.values.append(cell.value)
        sample.max_len = max(sample.max_len, len(str(cell.value)))
        if not sample.currency_format and cell.is_numeric:
            fmt = getattr(f_cell, "number_format", None) or ""
            sample.currency_format = any(sym in fmt for sym in CURRENCY_SYMBOLS)

    def _column_definition(self, name: str, shown: str, sample: _ColumnSample) -> ColumnDefinition:
        return ColumnDefinition(
            field=name,
            header_name=shown,
            type=self._infer_type(shown, sample),
            width=_column_width(shown, sample.max_len),
            editable=not name.startswith("_"),
        )

    def _infer_type(self, header: str, sample: _ColumnSample) -> ColumnType:
        low = header.lower()
        if any(k in low for k in self.config.status_keywords):
            return ColumnType.STATUS
        if not sample.values:
            return ColumnType.TEXT
        parsed = pd.to_numeric(pd.Series(sample.values, dtype=object), errors="coerce")
        ratio = float(parsed.notna().mean())
        if ratio >= self.config.numeric_threshold:
            if sample.currency_format or any(k in low for k in self.config.currency_keywords):
                return ColumnType.CURRENCY
            return ColumnType.NUMBER
        return ColumnType.TEXT

    @staticmethod
    def _concept_code(values: Sequence[CellValue], code_idx: int | None) -> str | None:
        if code_idx is not None and code_idx < len(values):
            candidate = normalize_code(values[code_idx].value)
            if candidate and CODE_PATTERN.fullmatch(candidate):
                return candidate
        for cell in values:
            if cell.kind is CellKind.TEXT:
                candidate = normalize_code(cell.value)
                if candidate and DOTTED_CODE_PATTERN.fullmatch(candidate):
                    return candidate
        return None

    @staticmethod
    def _label(
        values: Sequence[CellValue],
        label_idx: int | None,
        code_idx: int | None,
        code: str | None,
    ) -> str | None:
        if label_idx is not None and label_idx < len(values):
            value = values[label_idx].value
            if isinstance(value, str) and value.strip():
                return value.strip()
        for pos, cell in enumerate(values):
            if pos == code_idx or cell.kind is not CellKind.TEXT:
                continue
            text = str(cell.value).strip()
            if text and normalize_code(text) != code:
                return text
        return None


def _column_width(header: str, max_content_len: int) -> int:
    width = len(header) * 10 + 20
    if max_content_len:
        width = max(width, min(max_content_len * 8 + 20, MAX_CONTENT_WIDTH))
    return max(width, MIN_COLUMN_WIDTH)


def inspect_workbook(path: Path, patterns: Iterable[str], sample_rows: int = 5) -> dict[str, Any]:
    """Describe a workbook without extracting it (used by ``cli inspect``).

    Returns:
        ``{"sheets": [...], "breakdownSheet": name|None, "headers": [...], "rows": [[...], ...]}``
    """
    wb = open_workbook(path, data_only=True)
    try:
        sheets = list(wb.sheetnames)
        info: dict[str, Any] = {"sheets": sheets, "breakdownSheet": None, "headers": [], "rows": []}
        try:
            name = find_breakdown_sheet(sheets, patterns)
        except BreakdownSheetNotFound:
            return info
        info["breakdownSheet"] = name
        ws = wb[name]
        ws.reset_dimensions()
        for i, values in enumerate(ws.iter_rows(values_only=True)):
            if i == 0:
                seen: dict[str, int] = {}
                info["headers"] = [
                    _dedupe(_header_name(v), pos, seen) for pos, v in enumerate(values)
                ]
                continue
            if len(info["rows"]) >= sample_rows:
                break
            if all(v is None for v in values):
                continue
            info["rows"].append([CellValue.from_raw(v).to_plain() for v in values])
        return info
    finally:
        wb.close()


def cell_reference(row: int, col: int) -> str:
    """1-based (row, col) -> ``"C14"``."""
    return f"{get_column_letter(col)}{row}"
