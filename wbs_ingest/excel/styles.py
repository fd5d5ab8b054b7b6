from __future__ import annotations

import threading
from typing import Any

from wbs_ingest.models.style import StyleDescriptor

"""Style table builder.

Cells are normalized into StyleDescriptor values and deduplicated by fingerprint, so the
table grows with the number of distinct formats in the workbook, not with the number of
cells. Ids are assigned in first-seen order: ``s0``, ``s1``, ...

Workbook defaults (Calibri 11, theme text colour, "General" number format) are treated as
"no formatting" so that plain cells never enter the table.
"""

__all__ = [
    "StyleTable",
    "style_from_cell",
    "normalize_color",
]

DEFAULT_FONT_NAME = "Calibri"
DEFAULT_FONT_SIZE = 11.0
DEFAULT_FONT_COLORS = frozenset({"theme:1", "000000"})
BORDER_SIDES = ("left", "right", "top", "bottom")


def normalize_color(color: Any) -> str | None:
    """Normalize an openpyxl Color into ``RRGGBB`` / ``theme:N[:tint]`` / ``indexed:N``."""
    if color is None:
        return None
    kind = getattr(color, "type", None)
    if kind == "rgb":
        rgb = getattr(color, "rgb", None)
        if not isinstance(rgb, str) or len(rgb) < 6:
            return None
        return rgb[-6:].upper()
    if kind == "theme":
        tint = getattr(color, "tint", 0.0) or 0.0
        if tint:
            return f"theme:{color.theme}:{round(float(tint), 4)}"
        return f"theme:{color.theme}"
    if kind == "indexed":
        # 64 = system foreground (自動)
        if color.indexed == 64:
            return None
        return f"indexed:{color.indexed}"
    return None


def style_from_cell(cell: Any) -> StyleDescriptor:
    """Build a StyleDescriptor from an openpyxl cell (read-only or regular).

    Read-only ``EmptyCell`` objects carry no style information and map to the default
    descriptor.
    """
    font = getattr(cell, "font", None)
    fill = getattr(cell, "fill", None)
    border = getattr(cell, "border", None)
    alignment = getattr(cell, "alignment", None)
    number_format = getattr(cell, "number_format", None)

    bold = italic = underline = strike = False
    font_size: float | None = None
    font_name: str | None = None
    font_color: str | None = None
    if font is not None:
        bold = bool(font.b)
        italic = bool(font.i)
        underline = bool(font.u) and font.u != "none"
        strike = bool(font.strike)
        if font.sz is not None and float(font.sz) != DEFAULT_FONT_SIZE:
            font_size = float(font.sz)
        if font.name and font.name != DEFAULT_FONT_NAME:
            font_name = font.name
        font_color = normalize_color(font.color)
        if font_color in DEFAULT_FONT_COLORS:
            font_color = None

    bg_color: str | None = None
    if fill is not None and getattr(fill, "patternType", None):
        bg_color = normalize_color(fill.fgColor)

    borders: list[tuple[str, str]] = []
    if border is not None:
        for side in BORDER_SIDES:
            edge = getattr(border, side, None)
            if edge is not None and edge.style:
                borders.append((side, edge.style))

    h_align = v_align = None
    wrap = False
    if alignment is not None:
        h_align = alignment.horizontal if alignment.horizontal not in (None, "general") else None
        v_align = alignment.vertical if alignment.vertical not in (None, "bottom") else None
        wrap = bool(alignment.wrap_text)

    if number_format in (None, "", "General"):
        number_format = None

    return StyleDescriptor(
        bold=bold,
        italic=italic,
        underline=underline,
        strike=strike,
        font_size=font_size,
        font_name=font_name,
        font_color=font_color,
        bg_color=bg_color,
        borders=tuple(sorted(borders)),
        h_align=h_align,
        v_align=v_align,
        wrap=wrap,
        number_format=number_format,
    )


class StyleTable:
    """Deduplicating style table for one job.

    ``internalize`` is idempotent: the same descriptor (or any structurally equal one)
    always returns the same id.
    """

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}  # fingerprint -> id
        self._entries: dict[str, StyleDescriptor] = {}  # id -> descriptor
        self._cell_cache: dict[tuple[int, ...], str | None] = {}
        self._lock = threading.Lock()

    def internalize(self, descriptor: StyleDescriptor) -> str | None:
        """Return the style id for ``descriptor``; None for the default descriptor."""
        if descriptor.is_default:
            return None
        fingerprint = descriptor.fingerprint()
        with self._lock:
            style_id = self._ids.get(fingerprint)
            if style_id is None:
                style_id = f"s{len(self._ids)}"
                self._ids[fingerprint] = style_id
                self._entries[style_id] = descriptor
            return style_id

    def internalize_cell(self, cell: Any) -> str | None:
        """Internalize a cell's formatting, skipping normalization for known style arrays."""
        style_array = getattr(cell, "style_array", None)
        if style_array is None:
            if getattr(cell, "font", None) is None:
                return None
            return self.internalize(style_from_cell(cell))
        key = tuple(style_array)
        if key in self._cell_cache:
            return self._cell_cache[key]
        style_id = self.internalize(style_from_cell(cell))
        self._cell_cache[key] = style_id
        return style_id

    def get(self, style_id: str) -> StyleDescriptor | None:
        return self._entries.get(style_id)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """``{id: descriptor}`` in id order, as embedded in the manifest."""
        return {style_id: desc.to_dict() for style_id, desc in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, style_id: object) -> bool:
        return style_id in self._entries
