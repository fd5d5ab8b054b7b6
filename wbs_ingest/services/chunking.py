from __future__ import annotations

import gzip
import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wbs_ingest.models.breakdown_row import BreakdownRow
from wbs_ingest.models.chunk import ChunkWindow

"""Chunk planning and chunk encoding.

``plan_windows`` is a pure function of (row_count, window_size): consecutive half-open
windows whose union is exactly ``[0, row_count)``. ``write_chunks`` walks the spooled rows
once and writes one gzip-compressed JSON file per window, holding at most one window of
rows in memory.
"""

__all__ = [
    "DEFAULT_WINDOW_SIZE",
    "plan_windows",
    "chunk_key",
    "encode_chunk",
    "decode_chunk",
    "write_chunks",
    "ChunkFile",
]

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 2000


def plan_windows(row_count: int, window_size: int = DEFAULT_WINDOW_SIZE) -> list[ChunkWindow]:
    """Partition ``[0, row_count)`` into consecutive windows of ``window_size`` rows.

    The last window holds the remainder; ``row_count == 0`` yields no windows.

    Raises:
        ValueError: negative row_count or non-positive window_size
    """
    if row_count < 0:
        raise ValueError(f"row_count must be >= 0: {row_count}")
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1: {window_size}")
    return [
        ChunkWindow(index=i, start_row=start, end_row=min(start + window_size, row_count))
        for i, start in enumerate(range(0, row_count, window_size))
    ]


def chunk_key(prefix: str, sheet_id: str, index: int) -> str:
    return f"{prefix}/chunks/{sheet_id}/chunk_{index}.json.gz"


def encode_chunk(sheet_id: str, window: ChunkWindow, rows: Iterable[BreakdownRow]) -> bytes:
    payload = {
        "sheetId": sheet_id,
        "index": window.index,
        "startRow": window.start_row,
        "endRow": window.end_row,
        "rowCount": window.row_count,
        "rows": [row.to_dict() for row in rows],
    }
    # mtime=0 で同一入力から同一バイト列
    return gzip.compress(
        json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8"), mtime=0
    )


def decode_chunk(data: bytes) -> dict[str, Any]:
    return json.loads(gzip.decompress(data).decode("utf-8"))


@dataclass(frozen=True)
class ChunkFile:
    window: ChunkWindow
    path: Path
    size_bytes: int


def _windowed(rows: Iterator[BreakdownRow], windows: list[ChunkWindow]) -> Iterator[tuple[ChunkWindow, list[BreakdownRow]]]:
    pending: BreakdownRow | None = next(rows, None)
    for window in windows:
        batch: list[BreakdownRow] = []
        while pending is not None and pending.index < window.end_row:
            if pending.index >= window.start_row:
                batch.append(pending)
            pending = next(rows, None)
        yield window, batch


def write_chunks(
    rows: Iterable[BreakdownRow],
    windows: list[ChunkWindow],
    sheet_id: str,
    out_dir: Path,
) -> Iterator[ChunkFile]:
    """Encode each window of ``rows`` (ordered by index) into ``out_dir``.

    Yields one ChunkFile per window as soon as it has been written, so a failure on one
    window can be recorded by the caller before the next is attempted.

    Raises:
        ValueError: a window does not receive exactly ``window.row_count`` rows
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    for window, batch in _windowed(iter(rows), windows):
        if len(batch) != window.row_count:
            raise ValueError(
                f"chunk {window.index}: expected {window.row_count} rows, got {len(batch)}"
            )
        data = encode_chunk(sheet_id, window, batch)
        path = out_dir / f"chunk_{window.index}.json.gz"
        path.write_bytes(data)
        logger.debug("chunk %d [%d, %d) -> %d bytes", window.index, window.start_row, window.end_row, len(data))
        yield ChunkFile(window=window, path=path, size_bytes=len(data))
