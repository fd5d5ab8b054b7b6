from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from wbs_ingest.config.loader import RetrievalConfig
from wbs_ingest.excel.reader import CODE_PATTERN
from wbs_ingest.models.asset_record import AssetType
from wbs_ingest.models.breakdown_row import BreakdownRow
from wbs_ingest.models.job import processed_prefix
from wbs_ingest.services.chunking import decode_chunk
from wbs_ingest.services.manifest import main_data_key, manifest_key
from wbs_ingest.storage.blob_store import BlobNotFoundError, BlobStore, BlobStoreError

"""Retrieval service: read-side access to ingested estimations.

Every operation validates its inputs first, then reads the manifest once and whatever
artifact it needs. Nothing is recomputed: rows, chunks and the concept tree are served
from what the ingestion job stored. Errors map onto three codes:

- NotFoundError   -> NOT_FOUND (404)
- ValidationError -> VALIDATION_ERROR (400)
- StorageError    -> INTERNAL_ERROR (500)
"""

__all__ = [
    "RetrievalError",
    "NotFoundError",
    "ValidationError",
    "StorageError",
    "RetrievalService",
    "validate_estimation_id",
]

logger = logging.getLogger(__name__)

ESTIMATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")
ASSET_FIELDS = ("id", "conceptCode", "type", "filename", "width", "height", "sizeBytes", "storagePath")


class RetrievalError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500


class NotFoundError(RetrievalError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(RetrievalError):
    code = "VALIDATION_ERROR"
    status_code = 400


class StorageError(RetrievalError):
    code = "INTERNAL_ERROR"
    status_code = 500


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat().replace("+00:00", "Z")


def validate_estimation_id(estimation_id: str) -> str:
    if not isinstance(estimation_id, str) or not ESTIMATION_ID_PATTERN.fullmatch(estimation_id):
        raise ValidationError(f"invalid estimation id: {estimation_id!r}")
    if ".." in estimation_id:
        raise ValidationError(f"invalid estimation id: {estimation_id!r}")
    return estimation_id


class RetrievalService:
    def __init__(
        self,
        store: BlobStore,
        config: RetrievalConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or RetrievalConfig()
        self._clock = clock

    # -- storage access -----------------------------------------------------------------

    def _read(self, key: str, what: str) -> bytes:
        try:
            return self.store.get(key)
        except BlobNotFoundError as e:
            raise NotFoundError(f"{what} not found") from e
        except (BlobStoreError, OSError) as e:
            logger.error("storage read failed for %s: %s", key, e)
            raise StorageError(f"failed to read {what}") from e

    def _read_json(self, key: str, what: str) -> dict[str, Any]:
        data = self._read(key, what)
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("corrupt json at %s: %s", key, e)
            raise StorageError(f"{what} is corrupt") from e

    def get_manifest(self, estimation_id: str) -> dict[str, Any]:
        validate_estimation_id(estimation_id)
        return self._read_json(manifest_key(processed_prefix(estimation_id)), "manifest")

    # -- operations ---------------------------------------------------------------------

    def get_main_data(self, estimation_id: str) -> dict[str, Any]:
        """Columns plus rows (small sheets) or chunk references (large sheets).

        Raises:
            ValidationError: Malformed estimation id
            NotFoundError: No manifest or no main data for the estimation
            StorageError: Storage read failed or an artifact is corrupt
        """
        manifest = self.get_manifest(estimation_id)
        main = manifest["mainSheet"]
        data = self._read_json(main.get("dataKey") or main_data_key(processed_prefix(estimation_id)), "main data")
        inline = bool(data.get("inline", main.get("inlineRows", False)))
        result: dict[str, Any] = {
            "estimationId": estimation_id,
            "sheetName": main["name"],
            "metadata": {
                "totalRows": main["rowCount"],
                "totalColumns": main["columnCount"],
                "lastModified": manifest["processedAt"],
            },
            "columnDefs": main["columns"],
            "rows": data.get("rows", []) if inline else [],
        }
        if not inline:
            result["chunkSize"] = manifest["chunkSize"]
            result["chunks"] = manifest["chunks"]
        return result

    def get_chunk(self, estimation_id: str, index: int) -> dict[str, Any]:
        """One decompressed row chunk of the breakdown sheet.

        Rows are returned in grid form (``{field: value, _conceptCode?}``) with the per-cell
        style ids alongside in ``cellStyles``.
        """
        validate_estimation_id(estimation_id)
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValidationError(f"chunk index must be a non-negative integer: {index!r}")
        manifest = self.get_manifest(estimation_id)
        ref = next((c for c in manifest["chunks"] if c["index"] == index), None)
        if ref is None:
            raise NotFoundError(f"chunk {index} not found")
        raw = self._read(ref["key"], f"chunk {index}")
        try:
            payload = decode_chunk(raw)
        except (OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageError(f"chunk {index} is corrupt") from e
        rows = [BreakdownRow.from_dict(r) for r in payload.get("rows", [])]
        return {
            "estimationId": estimation_id,
            "sheetId": payload["sheetId"],
            "index": payload["index"],
            "startRow": payload["startRow"],
            "endRow": payload["endRow"],
            "rowCount": payload["rowCount"],
            "rows": [r.to_plain() for r in rows],
            "cellStyles": [r.styles for r in rows],
            "styles": manifest["styles"],
        }

    def get_tree(
        self,
        estimation_id: str,
        include_empty: bool = False,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        """Stored concept forest and flat list, pruned by options (counts are as stored).

        Args:
            include_empty: Keep nodes with zero rows and zero assets
            max_depth: Keep only nodes with ``level < max_depth``

        Raises:
            ValidationError: Malformed id or max_depth outside ``1..retrieval.max_tree_depth``
            NotFoundError: No manifest or no stored tree
        """
        validate_estimation_id(estimation_id)
        if max_depth is not None:
            if isinstance(max_depth, bool) or not isinstance(max_depth, int):
                raise ValidationError(f"maxDepth must be an integer: {max_depth!r}")
            if not 1 <= max_depth <= self.config.max_tree_depth:
                raise ValidationError(f"maxDepth must be between 1 and {self.config.max_tree_depth}")
        manifest = self.get_manifest(estimation_id)
        key = manifest.get("treeKey")
        if not key:
            raise NotFoundError("tree not available")
        stored = self._read_json(key, "tree")

        def keep(node: dict[str, Any]) -> bool:
            if max_depth is not None and node["level"] >= max_depth:
                return False
            return include_empty or node["rowCount"] > 0 or node["assetCount"] > 0

        kept_ids: set[str] = set()

        def prune(nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
            out = []
            for node in nodes:
                if not keep(node):
                    continue
                kept_ids.add(node["id"])
                out.append({**node, "children": prune(node.get("children", []))})
            return out

        roots = prune(stored.get("roots", []))
        flat = [n for n in stored.get("flatList", []) if n["id"] in kept_ids]
        stored_depth = int(stored.get("maxDepth", 0))
        return {
            "estimationId": estimation_id,
            "totalNodes": len(flat),
            "maxDepth": min(stored_depth, max_depth) if max_depth is not None else stored_depth,
            "roots": roots,
            "flatList": flat,
        }

    def get_assets(
        self,
        estimation_id: str,
        concept_code: str | None,
        sheet_type: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        signed: bool = True,
    ) -> dict[str, Any]:
        """One page of a concept's assets, each with a freshly signed URL.

        ``limit`` defaults to ``retrieval.default_limit`` and is clamped to
        ``retrieval.max_limit``. Unassigned assets are never returned.

        Raises:
            ValidationError: Missing/malformed concept code, unknown sheet type, bad paging
            NotFoundError: No manifest for the estimation
        """
        validate_estimation_id(estimation_id)
        if not concept_code:
            raise ValidationError("conceptCode is required")
        if not CODE_PATTERN.fullmatch(concept_code):
            raise ValidationError(f"invalid conceptCode: {concept_code!r}")
        valid_types = {t.value for t in AssetType}
        if sheet_type is not None and sheet_type not in valid_types:
            raise ValidationError(f"sheetType must be one of {sorted(valid_types)}")
        if limit is None:
            limit = self.config.default_limit
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        limit = min(limit, self.config.max_limit)

        manifest = self.get_manifest(estimation_id)
        matching = [
            a
            for a in manifest.get("assets", [])
            if a.get("conceptCode") == concept_code and (sheet_type is None or a.get("type") == sheet_type)
        ]
        page = matching[offset : offset + limit]

        ttl = self.config.signed_url_ttl
        now = self._clock()
        assets = []
        for asset in page:
            item = {k: asset.get(k) for k in ASSET_FIELDS}
            if signed:
                item["signedUrl"] = self.store.get_signed_url(asset["storagePath"], ttl, now=now)
                item["signedUrlExpiresAt"] = _iso(int(now) + ttl)
            else:
                item["signedUrl"] = None
                item["signedUrlExpiresAt"] = None
            assets.append(item)
        return {
            "estimationId": estimation_id,
            "conceptCode": concept_code,
            "total": len(matching),
            "limit": limit,
            "offset": offset,
            "assets": assets,
        }
