from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema
from jsonschema.exceptions import ValidationError

from wbs_ingest.excel.reader import ExtractedSheet
from wbs_ingest.excel.styles import StyleTable
from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.models.asset_record import AssetRecord, AssetType
from wbs_ingest.models.chunk import ChunkRef
from wbs_ingest.models.error_record import utc_timestamp
from wbs_ingest.models.job import IngestionJob
from wbs_ingest.models.processing_result import ProcessingStats
from wbs_ingest.storage.blob_store import BlobStore
from wbs_ingest.storage.retry import call_with_retry

"""Manifest builder.

The manifest (``trojan-manifest.json``) is the compatibility contract between the
pipeline and any retrieval consumer. It is assembled once, after every chunk and asset
upload has settled, validated against ``contracts/manifest_schema.json`` and written last.
It lists only artifacts that were actually stored.
"""

__all__ = [
    "MANIFEST_VERSION",
    "ManifestValidationError",
    "manifest_key",
    "main_data_key",
    "tree_key",
    "concept_asset_map",
    "build_manifest",
    "validate_manifest",
    "write_manifest",
]

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"
SCHEMA_PATH = Path(__file__).resolve().parent.parent / "contracts" / "manifest_schema.json"


class ManifestValidationError(Exception):
    pass


def manifest_key(prefix: str) -> str:
    return f"{prefix}/trojan-manifest.json"


def main_data_key(prefix: str) -> str:
    return f"{prefix}/main-data.json"


def tree_key(prefix: str) -> str:
    return f"{prefix}/tree.json"


@lru_cache(maxsize=1)
def _schema() -> dict[str, Any]:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def concept_asset_map(assets: Sequence[AssetRecord]) -> dict[str, list[str]]:
    """``{conceptCode: [assetId, ...]}`` for assigned assets, in asset order."""
    mapping: dict[str, list[str]] = {}
    for asset in assets:
        if asset.concept_code is not None:
            mapping.setdefault(asset.concept_code, []).append(asset.id)
    return mapping


def _sheet_entries(sheet: ExtractedSheet, assets: Sequence[AssetRecord]) -> list[dict[str, Any]]:
    counts: dict[str, int] = {}
    for asset in assets:
        counts[asset.source_sheet] = counts.get(asset.source_sheet, 0) + 1
    entries: list[dict[str, Any]] = []
    for index, name in enumerate(sheet.sheet_names):
        if name == sheet.sheet_name:
            entries.append({"name": name, "index": index, "role": "breakdown", "imageCount": 0})
        else:
            entries.append(
                {
                    "name": name,
                    "index": index,
                    "role": "assets",
                    "imageCount": counts.get(name, 0),
                    "assetType": AssetType.from_sheet_name(name).value,
                }
            )
    return entries


def build_manifest(
    job: IngestionJob,
    sheet: ExtractedSheet,
    *,
    chunk_size: int,
    chunks: Sequence[ChunkRef],
    styles: StyleTable,
    assets: Sequence[AssetRecord],
    stats: ProcessingStats,
    error_log: ErrorLogBuffer,
    tree_key_value: str | None,
    concept_count: int,
    inline_rows: bool,
) -> dict[str, Any]:
    """Assemble the manifest dict (not yet validated)."""
    prefix = job.output_prefix
    return {
        "version": MANIFEST_VERSION,
        "estimationId": job.estimation_id,
        "jobId": job.job_id,
        "originalFileName": job.filename,
        "processedAt": utc_timestamp(),
        "totals": {
            "sheets": sheet.total_sheets,
            "rows": sheet.row_count,
            "columns": len(sheet.columns),
            "chunks": len(chunks),
            "assets": len(assets),
            "styles": len(styles),
            "concepts": concept_count,
        },
        "mainSheet": {
            "name": sheet.sheet_name,
            "sheetId": sheet.sheet_id,
            "index": sheet.sheet_index,
            "rowCount": sheet.row_count,
            "columnCount": len(sheet.columns),
            "columns": [c.to_dict() for c in sheet.columns],
            "codeField": sheet.code_field,
            "dataKey": main_data_key(prefix),
            "inlineRows": inline_rows,
        },
        "chunkSize": chunk_size,
        "chunks": [c.to_dict() for c in chunks],
        "styles": styles.to_dict(),
        "treeKey": tree_key_value,
        "sheets": _sheet_entries(sheet, assets),
        "assets": [a.to_dict() for a in assets],
        "conceptAssetMap": concept_asset_map(assets),
        "stats": stats.to_dict(),
        "errors": [e.to_dict() for e in error_log.errors],
        "warnings": [w.to_dict() for w in error_log.warnings],
    }


def validate_manifest(manifest: dict[str, Any]) -> None:
    """Raises ManifestValidationError when the manifest violates the schema."""
    try:
        jsonschema.validate(manifest, _schema())
    except ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path)
        raise ManifestValidationError(f"manifest invalid at '{path}': {e.message}") from e


def write_manifest(
    store: BlobStore,
    prefix: str,
    manifest: dict[str, Any],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> str:
    """Validate and store the manifest. Storage errors propagate after the last retry."""
    validate_manifest(manifest)
    key = manifest_key(prefix)
    data = json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8")
    call_with_retry(
        store.put, key, data, "application/json", max_attempts=max_attempts, base_delay=base_delay
    )
    logger.info("manifest written: %s (%d bytes)", key, len(data))
    return key
