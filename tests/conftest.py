# Shared pytest fixtures: generated workbooks, images, config and an in-memory blob store
from __future__ import annotations

import io
import logging
import zipfile
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest
from openpyxl import Workbook
from openpyxl.drawing.image import Image as XLImage
from PIL import Image

from wbs_ingest.config.loader import AppConfig, config_from_dict
from wbs_ingest.logging.init import APP_LOGGER_NAME, reset_logging
from wbs_ingest.storage.blob_store import InMemoryBlobStore

BREAKDOWN_SHEET = "03 Desglose f"
BREAKDOWN_HEADERS = ["Clave", "Descripción", "Unidad", "Cantidad", "Precio unitario", "Importe", "Estado"]


def png_bytes(color: tuple[int, int, int] = (200, 30, 30), size: tuple[int, int] = (12, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def distinct_color(i: int) -> tuple[int, int, int]:
    return ((i * 37) % 256, (i * 91 + 40) % 256, (i * 53 + 80) % 256)


def breakdown_rows(count: int, per_group: int = 50, groups: int = 10) -> list[list[Any]]:
    """``count`` coded leaf rows: ``{chapter}.{group}.{item}``."""
    rows = []
    for i in range(count):
        chapter = 1 + i // (per_group * groups)
        group = 1 + (i // per_group) % groups
        item = 1 + i % per_group
        code = f"{chapter}.{group}.{item}"
        qty = (i % 7) + 1
        price = 100 + (i % 13) * 2.5
        rows.append([code, f"Concepto {code}", "m2", qty, price, qty * price, "Pendiente"])
    return rows


def write_workbook(
    path: Path,
    rows: Iterable[Sequence[Any]] = (),
    *,
    sheet_name: str = BREAKDOWN_SHEET,
    headers: Sequence[Any] = BREAKDOWN_HEADERS,
    images: dict[str, list[tuple[str, bytes]]] | None = None,
    cells: dict[str, dict[str, Any]] | None = None,
    extra_sheets: Sequence[str] = (),
    breakdown_first: bool = True,
) -> Path:
    """Write an estimation workbook.

    Args:
        rows: Breakdown rows written below ``headers``
        images: ``{sheet: [(anchor cell, png bytes), ...]}`` for asset sheets
        cells: ``{sheet: {cell ref: value}}`` written into asset sheets
        extra_sheets: Empty sheets added after the asset sheets
        breakdown_first: Put the breakdown sheet first (otherwise last)
    """
    wb = Workbook()
    default = wb.active
    asset_sheets = list((images or {}).keys()) + [s for s in (cells or {}) if s not in (images or {})]

    def add_breakdown() -> None:
        ws = wb.create_sheet(sheet_name)
        ws.append(list(headers))
        for row in rows:
            ws.append(list(row))

    if breakdown_first:
        add_breakdown()
    for name in asset_sheets:
        ws = wb.create_sheet(name)
        for ref, value in (cells or {}).get(name, {}).items():
            ws[ref] = value
        for ref, data in (images or {}).get(name, []):
            ws.add_image(XLImage(io.BytesIO(data)), ref)
    for name in extra_sheets:
        wb.create_sheet(name)
    if not breakdown_first:
        add_breakdown()
    wb.remove(default)
    wb.save(path)
    return path


def replace_zip_member(path: Path, member_suffix: str, data: bytes) -> None:
    """Overwrite the first package member ending with ``member_suffix``."""
    with zipfile.ZipFile(path) as src:
        entries = [(info, src.read(info.filename)) for info in src.infolist()]
    replaced = False
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as dst:
        for info, payload in entries:
            if not replaced and info.filename.endswith(member_suffix):
                payload = data
                replaced = True
            dst.writestr(info.filename, payload)
    assert replaced, f"no member ending with {member_suffix}"


@pytest.fixture(autouse=True)
def _fresh_logging():
    reset_logging()
    yield
    # setup_logging が付けた stdout ハンドラを外す (次のテストの capsys と混ざらないように)
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    for handler in app_logger.handlers[:]:
        app_logger.removeHandler(handler)
    app_logger.propagate = True
    app_logger.setLevel(logging.NOTSET)
    reset_logging()


@pytest.fixture()
def temp_workdir(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "config").mkdir()
    (tmp_path / "data").mkdir()
    monkeypatch.chdir(tmp_path)
    for name in ("WBS_CONFIG", "WBS_STORAGE_ROOT", "WBS_SIGNING_SECRET", "WBS_PUBLIC_BASE_URL", "WBS_REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture()
def config_data() -> dict[str, Any]:
    return {
        "storage": {"backend": "memory", "signing_secret": "test-signing-secret"},
        "ingestion": {
            "chunk_size": 500,
            "upload_concurrency": 2,
            "max_retries": 2,
            "retry_base_delay": 0,
        },
    }


@pytest.fixture()
def app_config(config_data: dict[str, Any]) -> AppConfig:
    return config_from_dict(config_data, env={})


@pytest.fixture()
def memory_store() -> InMemoryBlobStore:
    return InMemoryBlobStore("test-signing-secret", "http://testserver/blobs")


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    return png_bytes


@pytest.fixture()
def rows_factory() -> Callable[..., list[list[Any]]]:
    return breakdown_rows


@pytest.fixture()
def color_for() -> Callable[[int], tuple[int, int, int]]:
    return distinct_color


@pytest.fixture()
def patch_zip() -> Callable[[Path, str, bytes], None]:
    return replace_zip_member


@pytest.fixture()
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    def build(name: str = "estimate.xlsx", rows: Iterable[Sequence[Any]] = (), **kwargs: Any) -> Path:
        return write_workbook(tmp_path / name, rows, **kwargs)

    return build


@pytest.fixture()
def photo_workbook(workbook_factory) -> Path:
    """Small estimate: 5 coded rows plus a photo sheet and a generator sheet."""
    rows = [
        ["5", "Instalaciones", None, None, None, None, None],
        ["5.1", "Eléctricas", None, None, None, None, None],
        ["5.1.1", "Cableado", "m", 120, 12.5, 1500, "Pendiente"],
        ["5.2", "Hidráulicas", None, None, None, None, None],
        ["5.2.1", "Tubería PVC", "m", 80, 20, 1600, "Aprobado"],
    ]
    return workbook_factory(
        "photos.xlsx",
        rows,
        images={
            "05 Fotos": [("B2", png_bytes(distinct_color(1))), ("B4", png_bytes(distinct_color(2)))],
            "5.2 Generador": [("D10", png_bytes(distinct_color(3)))],
        },
        cells={"05 Fotos": {"A2": "5.1.1", "A4": "5.2.1"}},
    )
