from __future__ import annotations

from fastapi import Request

from wbs_ingest.config.loader import AppConfig
from wbs_ingest.queue.client import TaskQueue
from wbs_ingest.services.retrieval import RetrievalService
from wbs_ingest.storage.blob_store import BlobStore

"""FastAPI dependencies resolved from ``app.state`` (set up by create_app)."""

__all__ = [
    "get_config",
    "get_store",
    "get_retrieval",
    "get_queue",
]


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_store(request: Request) -> BlobStore:
    return request.app.state.store


def get_retrieval(request: Request) -> RetrievalService:
    return request.app.state.retrieval


def get_queue(request: Request) -> TaskQueue:
    # redis 接続は最初の ingest / jobs リクエストまで作らない
    state = request.app.state
    if state.queue is None:
        state.queue = TaskQueue(state.config.queue)
    return state.queue
