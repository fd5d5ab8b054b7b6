"""Signed blob reads: the target of URLs produced by ``BlobStore.get_signed_url``."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response

from wbs_ingest.api.deps import get_store
from wbs_ingest.api.errors import ApiError
from wbs_ingest.storage.blob_store import BlobNotFoundError, BlobStore, BlobStoreError

router = APIRouter(prefix="/blobs", tags=["blobs"])


@router.get("/{key:path}", summary="Read a blob through a signed URL")
def get_blob(
    key: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=1),
    store: BlobStore = Depends(get_store),
) -> Response:
    if not store.verify_signature(key, expires, signature):
        raise ApiError("UNAUTHORIZED", "invalid or expired signature", 401)
    try:
        data = store.get(key)
        media_type = store.content_type(key)
    except BlobNotFoundError as e:
        raise ApiError("NOT_FOUND", "blob not found", 404) from e
    except BlobStoreError as e:
        raise ApiError("VALIDATION_ERROR", str(e), 400) from e
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "private, max-age=300"})
