from __future__ import annotations

import copy
import json

import jsonschema
import pytest

from wbs_ingest.models.job import IngestionJob
from wbs_ingest.services.manifest import (
    SCHEMA_PATH,
    ManifestValidationError,
    manifest_key,
    validate_manifest,
)
from wbs_ingest.services.orchestrator import run_ingestion

"""Manifest contract: what the pipeline writes is what retrieval consumers can rely on."""


@pytest.fixture()
def manifest(app_config, memory_store, photo_workbook, temp_workdir):
    memory_store.put_file("uploads/est-1/photos.xlsx", photo_workbook)
    job = IngestionJob("est-1", "uploads/est-1/photos.xlsx", job_id="ingest-est-1")
    run_ingestion(job, memory_store, app_config)
    return json.loads(memory_store.get(manifest_key("processed/est-1")))


def test_schema_is_valid_draft7():
    jsonschema.Draft7Validator.check_schema(json.loads(SCHEMA_PATH.read_text(encoding="utf-8")))


def test_written_manifest_matches_schema(manifest):
    validate_manifest(manifest)
    assert manifest["version"] == "1.0"
    assert manifest["estimationId"] == "est-1"
    assert manifest["jobId"] == "ingest-est-1"
    assert manifest["originalFileName"] == "photos.xlsx"


def test_manifest_only_lists_stored_artifacts(manifest, memory_store):
    for chunk in manifest["chunks"]:
        assert memory_store.exists(chunk["key"])
    for asset in manifest["assets"]:
        assert memory_store.exists(asset["storagePath"])
    assert memory_store.exists(manifest["mainSheet"]["dataKey"])
    assert memory_store.exists(manifest["treeKey"])


def test_totals_agree_with_lists(manifest):
    totals = manifest["totals"]
    assert totals["chunks"] == len(manifest["chunks"])
    assert totals["assets"] == len(manifest["assets"])
    assert totals["styles"] == len(manifest["styles"])
    assert totals["rows"] == manifest["mainSheet"]["rowCount"] == sum(c["rowCount"] for c in manifest["chunks"])
    assert manifest["stats"]["imagesProcessed"] == len(manifest["assets"])


def test_concept_asset_map_matches_assets(manifest):
    expected = {}
    for asset in manifest["assets"]:
        if asset["conceptCode"] is not None:
            expected.setdefault(asset["conceptCode"], []).append(asset["id"])
    assert manifest["conceptAssetMap"] == expected
    assert set(expected) == {"5.1.1", "5.2.1", "5.2"}


def test_sheet_roles(manifest):
    roles = {s["name"]: (s["role"], s.get("assetType")) for s in manifest["sheets"]}
    assert roles == {
        "03 Desglose f": ("breakdown", None),
        "05 Fotos": ("assets", "photo"),
        "5.2 Generador": ("assets", "generator"),
    }


@pytest.mark.parametrize(
    "mutate",
    [
        lambda m: m.pop("stats"),
        lambda m: m["totals"].update(rows=-1),
        lambda m: m["styles"].update({"bold": {}}),
        lambda m: m["assets"][0].update(format="png"),
        lambda m: m["errors"].append({"type": "database", "severity": "error", "message": "x", "timestamp": "2024-01-01T00:00:00Z"}),
        lambda m: m.update(processedAt="2024-01-01 00:00"),
    ],
)
def test_schema_rejects_broken_manifests(manifest, mutate):
    broken = copy.deepcopy(manifest)
    mutate(broken)
    with pytest.raises(ManifestValidationError):
        validate_manifest(broken)
