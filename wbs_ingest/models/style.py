from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

"""StyleDescriptor model.

A StyleDescriptor is the normalized, comparable form of a cell's formatting. Two cells that
look the same produce equal descriptors, and equal descriptors produce the same fingerprint,
which is what the style table deduplicates on.
"""

__all__ = [
    "StyleDescriptor",
]


@dataclass(frozen=True)
class StyleDescriptor:
    """Normalized cell formatting. ``None`` / ``False`` means "default"."""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    strike: bool = False
    font_size: float | None = None
    font_name: str | None = None
    font_color: str | None = None  # RRGGBB, or "theme:N[:tint]" / "indexed:N"
    bg_color: str | None = None
    borders: tuple[tuple[str, str], ...] = ()  # (side, style) sorted by side
    h_align: str | None = None
    v_align: str | None = None
    wrap: bool = False
    number_format: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Compact dict with default fields omitted (also the canonical hashing form)."""
        data: dict[str, Any] = {}
        if self.bold:
            data["bold"] = True
        if self.italic:
            data["italic"] = True
        if self.underline:
            data["underline"] = True
        if self.strike:
            data["strike"] = True
        if self.font_size is not None:
            data["fontSize"] = self.font_size
        if self.font_name:
            data["fontName"] = self.font_name
        if self.font_color:
            data["fontColor"] = self.font_color
        if self.bg_color:
            data["bgColor"] = self.bg_color
        if self.borders:
            data["borders"] = {side: style for side, style in self.borders}
        if self.h_align:
            data["hAlign"] = self.h_align
        if self.v_align:
            data["vAlign"] = self.v_align
        if self.wrap:
            data["wrap"] = True
        if self.number_format:
            data["numberFormat"] = self.number_format
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> StyleDescriptor:
        borders = data.get("borders") or {}
        return StyleDescriptor(
            bold=bool(data.get("bold", False)),
            italic=bool(data.get("italic", False)),
            underline=bool(data.get("underline", False)),
            strike=bool(data.get("strike", False)),
            font_size=data.get("fontSize"),
            font_name=data.get("fontName"),
            font_color=data.get("fontColor"),
            bg_color=data.get("bgColor"),
            borders=tuple(sorted((str(k), str(v)) for k, v in borders.items())),
            h_align=data.get("hAlign"),
            v_align=data.get("vAlign"),
            wrap=bool(data.get("wrap", False)),
            number_format=data.get("numberFormat"),
        )

    @property
    def is_default(self) -> bool:
        return not self.to_dict()

    def fingerprint(self) -> str:
        """SHA-1 of the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha1(canonical.encode("utf-8")).hexdigest()
