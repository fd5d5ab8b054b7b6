from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from wbs_ingest.storage.blob_store import BlobNotFoundError, BlobStoreError

"""Retry policy for blob-store writes.

Transient failures (BlobStoreError other than not-found, OSError) are retried with
exponential backoff starting at ``base_delay`` seconds; after the last attempt the
original exception is re-raised to the caller.
"""

__all__ = [
    "is_transient",
    "upload_retrying",
    "call_with_retry",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WAIT_SECONDS = 30


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, BlobNotFoundError):
        return False
    return isinstance(exc, (BlobStoreError, OSError))


def upload_retrying(max_attempts: int = 3, base_delay: float = 1.0) -> Retrying:
    return Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=MAX_WAIT_SECONDS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def call_with_retry(
    fn: Callable[..., T],
    *args: object,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    **kwargs: object,
) -> T:
    """Call ``fn(*args, **kwargs)`` under the upload retry policy."""
    return upload_retrying(max_attempts, base_delay)(fn, *args, **kwargs)
