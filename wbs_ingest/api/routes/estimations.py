"""Estimation read and ingest endpoints.

GET  /estimations/{id}/univer-data   main sheet columns and rows (or chunk references)
GET  /estimations/{id}/chunks/{n}    one decompressed row chunk
GET  /estimations/{id}/tree-data     concept hierarchy
GET  /estimations/{id}/assets        paged, signed asset listing for one concept
POST /estimations/{id}/ingest        enqueue an ingestion job (202)
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from wbs_ingest.api.deps import get_queue, get_retrieval, get_store
from wbs_ingest.api.errors import ApiError
from wbs_ingest.models.job import IngestionJob
from wbs_ingest.queue.client import TaskQueue
from wbs_ingest.services.retrieval import RetrievalService, validate_estimation_id
from wbs_ingest.storage.blob_store import BlobStore, BlobStoreError

router = APIRouter(prefix="/estimations", tags=["estimations"])

ASSET_CACHE_CONTROL = "private, max-age=300"


class IngestRequest(BaseModel):
    fileKey: str = Field(..., min_length=1, description="Blob-store key of the uploaded workbook")
    originalFilename: str | None = None
    userId: str | None = None


def _ok(data: dict[str, Any]) -> dict[str, Any]:
    return {"success": True, "data": data}


@router.get("/{estimation_id}/univer-data", summary="Main sheet data for the grid")
def get_univer_data(
    estimation_id: str,
    retrieval: RetrievalService = Depends(get_retrieval),
) -> dict:
    """Column definitions plus rows; large sheets return chunk references instead of rows."""
    return _ok(retrieval.get_main_data(estimation_id))


@router.get("/{estimation_id}/chunks/{index}", summary="One row chunk of the main sheet")
def get_chunk(
    estimation_id: str,
    index: int,
    retrieval: RetrievalService = Depends(get_retrieval),
) -> dict:
    return _ok(retrieval.get_chunk(estimation_id, index))


@router.get("/{estimation_id}/tree-data", summary="Concept hierarchy")
def get_tree_data(
    estimation_id: str,
    include_empty: bool = Query(False, alias="includeEmpty"),
    max_depth: int | None = Query(None, alias="maxDepth"),
    retrieval: RetrievalService = Depends(get_retrieval),
) -> dict:
    return _ok(retrieval.get_tree(estimation_id, include_empty=include_empty, max_depth=max_depth))


@router.get("/{estimation_id}/assets", summary="Assets of one concept")
def get_assets(
    response: Response,
    estimation_id: str,
    concept_code: str | None = Query(None, alias="conceptCode"),
    sheet_type: str | None = Query(None, alias="sheetType"),
    limit: int | None = Query(None),
    offset: int = Query(0),
    signed: bool = Query(True),
    retrieval: RetrievalService = Depends(get_retrieval),
) -> dict:
    """Page through a concept's assets. Signed URLs expire after ``retrieval.signed_url_ttl``."""
    data = retrieval.get_assets(
        estimation_id,
        concept_code,
        sheet_type=sheet_type,
        limit=limit,
        offset=offset,
        signed=signed,
    )
    response.headers["Cache-Control"] = ASSET_CACHE_CONTROL
    return _ok(data)


@router.post("/{estimation_id}/ingest", status_code=202, summary="Enqueue an ingestion job")
def post_ingest(
    estimation_id: str,
    body: IngestRequest,
    store: BlobStore = Depends(get_store),
    queue: TaskQueue = Depends(get_queue),
) -> dict:
    validate_estimation_id(estimation_id)
    try:
        found = store.exists(body.fileKey)
    except BlobStoreError as e:
        raise ApiError("VALIDATION_ERROR", str(e), 400) from e
    if not found:
        raise ApiError("NOT_FOUND", f"source file not found: {body.fileKey}", 404)
    job = IngestionJob(
        estimation_id=estimation_id,
        source_key=body.fileKey,
        original_filename=body.originalFilename,
        user_id=body.userId or "anonymous",
    )
    job_id = queue.enqueue(job)
    return _ok({"jobId": job_id, "status": "queued"})
