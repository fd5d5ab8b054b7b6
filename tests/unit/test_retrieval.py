from __future__ import annotations

import json
from urllib.parse import parse_qs, urlsplit

import pytest

from wbs_ingest.config.loader import RetrievalConfig
from wbs_ingest.models.breakdown_row import BreakdownRow
from wbs_ingest.models.cell_value import CellValue
from wbs_ingest.models.chunk import ChunkWindow
from wbs_ingest.services.chunking import encode_chunk
from wbs_ingest.services.retrieval import (
    NotFoundError,
    RetrievalService,
    StorageError,
    ValidationError,
    validate_estimation_id,
)

EST = "est-2024-001"
PREFIX = f"processed/{EST}"
NOW = 1_700_000_000


def _asset(i: int, code: str | None, kind: str = "photo") -> dict:
    asset_id = f"img-{code or 'unassigned'}-{i:08x}"
    return {
        "id": asset_id,
        "conceptCode": code,
        "type": kind,
        "sourceSheet": "05 Fotos",
        "sourceCell": f"B{i + 2}",
        "filename": f"{asset_id}.webp",
        "storagePath": f"{PREFIX}/assets/{code or '_unassigned'}/{asset_id}.webp",
        "width": 640,
        "height": 480,
        "sizeBytes": 1000 + i,
        "format": "webp",
        "extractedAt": "2024-03-01T10:00:00Z",
    }


def _tree() -> dict:
    def node(code, level, rows, assets, children=()):
        return {
            "id": f"node-{code}",
            "code": code,
            "level": level,
            "rowCount": rows,
            "assetCount": assets,
            "children": list(children),
        }

    leaf_a = node("5.1.1", 2, 1, 0)
    leaf_b = node("5.2.1", 2, 2, 24)
    empty = node("5.3", 1, 0, 0)
    cat_1 = node("5.1", 1, 1, 0, [leaf_a])
    cat_2 = node("5.2", 1, 2, 24, [leaf_b])
    root = node("5", 0, 3, 24, [cat_1, cat_2, empty])
    flat = [root, cat_1, leaf_a, cat_2, leaf_b, empty]
    return {
        "estimationId": EST,
        "roots": [root],
        "flatList": [{k: v for k, v in n.items() if k != "children"} for n in flat],
        "totalNodes": len(flat),
        "maxDepth": 3,
    }


@pytest.fixture()
def seeded(memory_store):
    columns = [
        {"field": "Clave", "headerName": "Clave", "type": "text", "width": 100, "editable": True},
        {"field": "Importe", "headerName": "Importe", "type": "currency", "width": 120, "editable": True},
    ]
    rows = [
        BreakdownRow(index=i, cells={"Clave": CellValue.from_raw(f"5.2.{i}"), "Importe": CellValue.from_raw(i * 10)}, concept_code=f"5.2.{i}", styles={"Importe": "s0"} if i else {})
        for i in range(3)
    ]
    chunk = encode_chunk("03-desglose-f", ChunkWindow(0, 0, 3), rows)
    memory_store.put(f"{PREFIX}/chunks/03-desglose-f/chunk_0.json.gz", chunk, "application/gzip")
    assets = [_asset(i, "5.2.1") for i in range(24)] + [_asset(100, "5.1.1", "generator"), _asset(200, None)]
    manifest = {
        "version": "1.0",
        "estimationId": EST,
        "processedAt": "2024-03-01T10:00:05Z",
        "mainSheet": {
            "name": "03 Desglose f",
            "rowCount": 3,
            "columnCount": 2,
            "columns": columns,
            "dataKey": f"{PREFIX}/main-data.json",
            "inlineRows": True,
        },
        "chunkSize": 2000,
        "chunks": [{"sheetId": "03-desglose-f", "index": 0, "startRow": 0, "endRow": 3, "rowCount": 3, "key": f"{PREFIX}/chunks/03-desglose-f/chunk_0.json.gz", "sizeBytes": len(chunk)}],
        "styles": {"s0": {"bold": True}},
        "treeKey": f"{PREFIX}/tree.json",
        "assets": assets,
    }
    main_data = {"inline": True, "rows": [r.to_plain() for r in rows]}
    memory_store.put(f"{PREFIX}/trojan-manifest.json", json.dumps(manifest).encode(), "application/json")
    memory_store.put(f"{PREFIX}/main-data.json", json.dumps(main_data).encode(), "application/json")
    memory_store.put(f"{PREFIX}/tree.json", json.dumps(_tree()).encode(), "application/json")
    return memory_store


@pytest.fixture()
def service(seeded):
    return RetrievalService(seeded, RetrievalConfig(), clock=lambda: NOW)


@pytest.mark.parametrize("bad", ["", "../etc", "a/b", "-leading", "x" * 200, "est..1"])
def test_invalid_estimation_ids(bad):
    with pytest.raises(ValidationError):
        validate_estimation_id(bad)


def test_valid_estimation_id():
    assert validate_estimation_id("est_2024-001.v2") == "est_2024-001.v2"


def test_main_data_inline(service):
    data = service.get_main_data(EST)
    assert data["sheetName"] == "03 Desglose f"
    assert data["metadata"] == {"totalRows": 3, "totalColumns": 2, "lastModified": "2024-03-01T10:00:05Z"}
    assert [c["field"] for c in data["columnDefs"]] == ["Clave", "Importe"]
    assert [r["Clave"] for r in data["rows"]] == ["5.2.0", "5.2.1", "5.2.2"]
    assert "chunks" not in data


def test_main_data_chunked(seeded, service):
    manifest = json.loads(seeded.get(f"{PREFIX}/trojan-manifest.json"))
    manifest["mainSheet"]["inlineRows"] = False
    seeded.put(f"{PREFIX}/trojan-manifest.json", json.dumps(manifest).encode())
    seeded.put(f"{PREFIX}/main-data.json", json.dumps({"inline": False, "rows": []}).encode())
    data = service.get_main_data(EST)
    assert data["rows"] == []
    assert data["chunkSize"] == 2000
    assert data["chunks"][0]["index"] == 0


def test_unknown_estimation_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_main_data("est-missing")


def test_corrupt_manifest_is_storage_error(seeded, service):
    seeded.put(f"{PREFIX}/trojan-manifest.json", b"{not json")
    with pytest.raises(StorageError) as e:
        service.get_manifest(EST)
    assert e.value.status_code == 500


def test_get_chunk(service):
    chunk = service.get_chunk(EST, 0)
    assert (chunk["startRow"], chunk["endRow"], chunk["rowCount"]) == (0, 3, 3)
    assert chunk["rows"][1] == {"Clave": "5.2.1", "Importe": 10, "_conceptCode": "5.2.1"}
    assert chunk["cellStyles"] == [{}, {"Importe": "s0"}, {"Importe": "s0"}]
    assert chunk["styles"] == {"s0": {"bold": True}}


def test_get_chunk_errors(service):
    with pytest.raises(NotFoundError):
        service.get_chunk(EST, 5)
    with pytest.raises(ValidationError):
        service.get_chunk(EST, -1)
    with pytest.raises(ValidationError):
        service.get_chunk(EST, True)


def test_tree_prunes_empty_nodes_by_default(service):
    tree = service.get_tree(EST)
    assert [n["code"] for n in tree["flatList"]] == ["5", "5.1", "5.1.1", "5.2", "5.2.1"]
    assert tree["totalNodes"] == 5
    assert [c["code"] for c in tree["roots"][0]["children"]] == ["5.1", "5.2"]
    # 集計値は保存値のまま
    assert tree["roots"][0]["rowCount"] == 3


def test_tree_include_empty_and_max_depth(service):
    full = service.get_tree(EST, include_empty=True)
    assert full["totalNodes"] == 6
    shallow = service.get_tree(EST, include_empty=True, max_depth=2)
    assert [n["code"] for n in shallow["flatList"]] == ["5", "5.1", "5.2", "5.3"]
    assert shallow["maxDepth"] == 2
    assert all(c["children"] == [] for c in shallow["roots"][0]["children"])


def test_tree_is_deterministic(service):
    assert service.get_tree(EST) == service.get_tree(EST)


@pytest.mark.parametrize("depth", [0, 11, "3"])
def test_tree_rejects_bad_depth(service, depth):
    with pytest.raises(ValidationError):
        service.get_tree(EST, max_depth=depth)


def test_assets_paging_24_items(service):
    first = service.get_assets(EST, "5.2.1", limit=10, offset=0)
    assert first["total"] == 24
    assert len(first["assets"]) == 10
    last = service.get_assets(EST, "5.2.1", limit=10, offset=20)
    assert len(last["assets"]) == 4
    assert last["assets"][-1]["id"] == _asset(23, "5.2.1")["id"]
    beyond = service.get_assets(EST, "5.2.1", limit=10, offset=40)
    assert beyond["assets"] == [] and beyond["total"] == 24


def test_assets_signed_urls(seeded, service):
    page = service.get_assets(EST, "5.1.1")
    assert page["limit"] == 20
    item = page["assets"][0]
    assert item["type"] == "generator"
    assert item["signedUrlExpiresAt"] == "2023-11-14T23:13:20Z"
    query = parse_qs(urlsplit(item["signedUrl"]).query)
    assert int(query["expires"][0]) == NOW + 3600
    assert seeded.verify_signature(item["storagePath"], NOW + 3600, query["signature"][0], now=NOW)
    unsigned = service.get_assets(EST, "5.1.1", signed=False)["assets"][0]
    assert unsigned["signedUrl"] is None


def test_assets_limit_is_clamped(service):
    page = service.get_assets(EST, "5.2.1", limit=1000)
    assert page["limit"] == 100
    assert len(page["assets"]) == 24


def test_assets_filter_by_type(service):
    assert service.get_assets(EST, "5.2.1", sheet_type="generator")["total"] == 0
    assert service.get_assets(EST, "5.2.1", sheet_type="photo")["total"] == 24


def test_unassigned_assets_are_never_returned(service):
    assert service.get_assets(EST, "5")["total"] == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"concept_code": None},
        {"concept_code": ""},
        {"concept_code": "5.x"},
        {"concept_code": "5.2.1", "sheet_type": "video"},
        {"concept_code": "5.2.1", "limit": 0},
        {"concept_code": "5.2.1", "offset": -1},
    ],
)
def test_assets_validation(service, kwargs):
    with pytest.raises(ValidationError):
        service.get_assets(EST, **kwargs)
