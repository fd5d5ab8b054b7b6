from __future__ import annotations

import itertools

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.styles.colors import Color

from wbs_ingest.excel.styles import StyleTable, normalize_color, style_from_cell
from wbs_ingest.models.style import StyleDescriptor


def test_normalize_color_variants():
    assert normalize_color(Color(rgb="FF1F4E79")) == "1F4E79"
    assert normalize_color(Color(theme=4)) == "theme:4"
    assert normalize_color(Color(theme=4, tint=-0.25)) == "theme:4:-0.25"
    assert normalize_color(Color(indexed=10)) == "indexed:10"
    assert normalize_color(Color(indexed=64)) is None
    assert normalize_color(None) is None


def test_plain_cell_has_default_descriptor():
    ws = Workbook().active
    ws["A1"] = "plain"
    desc = style_from_cell(ws["A1"])
    assert desc.is_default
    assert StyleTable().internalize(desc) is None


def test_formatted_cell_descriptor():
    ws = Workbook().active
    cell = ws["B2"]
    cell.value = 1500
    cell.font = Font(name="Arial", sz=9, b=True, color="FFFF0000")
    cell.fill = PatternFill(patternType="solid", fgColor="FFFFFF00")
    cell.border = Border(bottom=Side(style="thin"), left=Side(style="medium"))
    cell.alignment = Alignment(horizontal="right", wrap_text=True)
    cell.number_format = '"$"#,##0.00'

    desc = style_from_cell(cell)
    assert desc.bold and not desc.italic
    assert desc.font_name == "Arial"
    assert desc.font_size == 9.0
    assert desc.font_color == "FF0000"
    assert desc.bg_color == "FFFF00"
    assert desc.borders == (("bottom", "thin"), ("left", "medium"))
    assert desc.h_align == "right"
    assert desc.wrap
    assert desc.number_format == '"$"#,##0.00'
    assert StyleDescriptor.from_dict(desc.to_dict()) == desc


def test_internalize_is_idempotent_and_ordered():
    table = StyleTable()
    bold = StyleDescriptor(bold=True)
    red = StyleDescriptor(font_color="FF0000")
    assert table.internalize(bold) == "s0"
    assert table.internalize(red) == "s1"
    assert table.internalize(StyleDescriptor(bold=True)) == "s0"
    assert len(table) == 2
    assert "s1" in table
    assert table.get("s1") == red
    assert list(table.to_dict()) == ["s0", "s1"]
    assert table.to_dict()["s0"] == {"bold": True}


def test_scenario_47_distinct_styles_over_125000_cells():
    # 5,000 x 25 のセルに 47 種類の書式 -> テーブルは 47 件
    palette = [
        StyleDescriptor(bold=bool(i % 2), font_size=8.0 + i, bg_color=f"{i:06X}")
        for i in range(47)
    ]
    table = StyleTable()
    ids = set()
    for cell_index, desc in zip(range(5000 * 25), itertools.cycle(palette)):
        ids.add(table.internalize(StyleDescriptor.from_dict(desc.to_dict())))
    assert len(table) == 47
    assert ids == {f"s{i}" for i in range(47)}


def test_internalize_cell_caches_by_style_array():
    ws = Workbook().active
    for r in range(1, 6):
        ws.cell(row=r, column=1, value=r).font = Font(b=True)
    table = StyleTable()
    ids = {table.internalize_cell(ws.cell(row=r, column=1)) for r in range(1, 6)}
    assert ids == {"s0"}
    assert len(table) == 1
