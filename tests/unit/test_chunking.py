from __future__ import annotations

import pytest

from wbs_ingest.models.breakdown_row import BreakdownRow
from wbs_ingest.models.cell_value import CellValue
from wbs_ingest.services.chunking import (
    chunk_key,
    decode_chunk,
    encode_chunk,
    plan_windows,
    write_chunks,
)


def _rows(count: int) -> list[BreakdownRow]:
    return [
        BreakdownRow(index=i, cells={"Clave": CellValue.from_raw(f"1.{i + 1}")}, concept_code=f"1.{i + 1}", source_row=i + 2)
        for i in range(count)
    ]


@pytest.mark.parametrize("rows,size", [(0, 10), (1, 10), (10, 10), (11, 10), (20000, 2000), (20001, 2000), (7, 1)])
def test_windows_cover_every_row_exactly_once(rows, size):
    windows = plan_windows(rows, size)
    covered = [i for w in windows for i in range(w.start_row, w.end_row)]
    assert covered == list(range(rows))
    assert [w.index for w in windows] == list(range(len(windows)))
    assert all(0 < w.row_count <= size for w in windows)


def test_scenario_20000_rows_make_ten_windows():
    windows = plan_windows(20000, 2000)
    assert len(windows) == 10
    assert (windows[-1].start_row, windows[-1].end_row) == (18000, 20000)


def test_last_window_holds_remainder():
    windows = plan_windows(2500, 2000)
    assert [(w.start_row, w.end_row) for w in windows] == [(0, 2000), (2000, 2500)]
    assert windows[1].contains(2499)
    assert not windows[1].contains(2500)


def test_plan_windows_rejects_bad_arguments():
    with pytest.raises(ValueError):
        plan_windows(-1, 10)
    with pytest.raises(ValueError):
        plan_windows(10, 0)


def test_chunk_key_layout():
    assert chunk_key("processed/est-1", "03-desglose-f", 3) == "processed/est-1/chunks/03-desglose-f/chunk_3.json.gz"


def test_encode_is_deterministic_and_decodes():
    window = plan_windows(3, 3)[0]
    rows = _rows(3)
    data = encode_chunk("sheet", window, rows)
    assert data == encode_chunk("sheet", window, rows)
    assert data[:2] == b"\x1f\x8b"
    payload = decode_chunk(data)
    assert payload["sheetId"] == "sheet"
    assert (payload["startRow"], payload["endRow"], payload["rowCount"]) == (0, 3, 3)
    assert [BreakdownRow.from_dict(r) for r in payload["rows"]] == rows


def test_write_chunks_splits_rows(tmp_path):
    windows = plan_windows(5, 2)
    files = list(write_chunks(_rows(5), windows, "sheet", tmp_path / "out"))
    assert [f.window.index for f in files] == [0, 1, 2]
    assert all(f.path.exists() and f.size_bytes == f.path.stat().st_size for f in files)
    last = decode_chunk(files[-1].path.read_bytes())
    assert [r["r"] for r in last["rows"]] == [4]


def test_write_chunks_detects_missing_rows(tmp_path):
    windows = plan_windows(5, 2)
    rows = [r for r in _rows(5) if r.index != 3]
    written = []
    with pytest.raises(ValueError, match="chunk 1"):
        for chunk_file in write_chunks(rows, windows, "sheet", tmp_path):
            written.append(chunk_file.window.index)
    # 失敗前のチャンクは書かれている
    assert written == [0]
