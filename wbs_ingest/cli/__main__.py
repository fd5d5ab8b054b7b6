from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from wbs_ingest.config.loader import AppConfig, ConfigError, load_config
from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.logging.init import log_summary, set_debug, setup_logging
from wbs_ingest.models.job import IngestionError, IngestionJob
from wbs_ingest.services.context import JobCancelled
from wbs_ingest.services.manifest import ManifestValidationError
from wbs_ingest.services.orchestrator import run_ingestion
from wbs_ingest.services.progress import ProgressTracker
from wbs_ingest.services.summary import render_summary_line
from wbs_ingest.storage.blob_store import BlobStoreError, create_blob_store

"""CLI entrypoint: ``python -m wbs_ingest.cli <command>``.

Commands:
- ingest FILE --estimation-id ID   upload FILE into the blob store and ingest it in-process
- inspect FILE                     print sheets, the detected breakdown sheet and sample rows
- serve                            run the HTTP API (uvicorn)
- worker                           run an rq worker for queued ingestion jobs

Exit codes (ingest): 0 all good, 2 completed with recorded errors, 1 fatal.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

SUMMARY_PREFIX = "SUMMARY "

logger = logging.getLogger("wbs_ingest.cli")  # __name__ は -m 実行時に "__main__" になる


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv (values win over the existing environment)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="wbs-ingest", description="WBS estimation workbook ingestion")
    p.add_argument("--config", type=Path, default=None, help="Config file (default: $WBS_CONFIG or config/ingest.yml)")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a workbook in-process")
    ingest.add_argument("file", type=Path)
    ingest.add_argument("--estimation-id", required=True)
    ingest.add_argument("--debug", action="store_true", dest="debug_sub", help="Enable debug logging")

    inspect = sub.add_parser("inspect", help="Print sheet names, headers and first rows")
    inspect.add_argument("file", type=Path)
    inspect.add_argument("--rows", type=int, default=5)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("worker", help="Run an rq worker")
    return p.parse_args(argv)


def _ingest(cfg: AppConfig, file: Path, estimation_id: str) -> int:
    if not file.is_file():
        logger.error("file not found: %s", file)
        return EXIT_FATAL
    store = create_blob_store(cfg.storage)
    source_key = f"uploads/{estimation_id}/{file.name}"
    try:
        store.put_file(source_key, file, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")
    except BlobStoreError as e:
        logger.error("upload: %s", e)
        return EXIT_FATAL

    job = IngestionJob(estimation_id=estimation_id, source_key=source_key, original_filename=file.name)
    error_log = ErrorLogBuffer()
    logger.info("ingesting %s as %s", file, estimation_id)
    try:
        with ProgressTracker(f"Ingesting {file.name}") as progress:
            result = run_ingestion(job, store, cfg, on_progress=progress, error_log=error_log)
    except (IngestionError, JobCancelled, BlobStoreError, ManifestValidationError) as e:
        logger.error("ingest: %s", e)
        if len(error_log):
            logger.info("error log: %s", error_log.flush())
        return EXIT_FATAL

    # log_summary が SUMMARY ラベルを付けるので接頭辞を外す
    summary_line = render_summary_line(result)
    log_summary(summary_line[len(SUMMARY_PREFIX):])
    if len(error_log):
        logger.info("error log: %s", error_log.flush())
    return EXIT_PARTIAL_FAILURE if result.has_errors else EXIT_SUCCESS_ALL


def _inspect(cfg: AppConfig, file: Path, rows: int) -> int:
    from wbs_ingest.excel.reader import inspect_workbook

    if not file.is_file():
        logger.error("file not found: %s", file)
        return EXIT_FATAL
    try:
        info = inspect_workbook(file, cfg.ingestion.sheet_patterns, sample_rows=rows)
    except IngestionError as e:
        logger.error("inspect: %s", e)
        return EXIT_FATAL
    print(f"FILE: {file.name}")
    print(f"  sheets={info['sheets']}")
    if info["breakdownSheet"] is None:
        print("  breakdown_sheet=<none>")
        return EXIT_SUCCESS_ALL
    print(f"  breakdown_sheet={info['breakdownSheet']}")
    print(f"  headers={info['headers']}")
    for row in info["rows"]:
        print("    row=", json.dumps(row, ensure_ascii=False, default=str))
    return EXIT_SUCCESS_ALL


def _serve(cfg: AppConfig, host: str, port: int) -> int:  # pragma: no cover (blocking)
    import uvicorn

    from wbs_ingest.api.app import create_app

    uvicorn.run(create_app(cfg), host=host, port=port, log_config=None)
    return EXIT_SUCCESS_ALL


def _worker(cfg: AppConfig) -> int:  # pragma: no cover (blocking)
    from redis import Redis
    from rq import Queue, Worker

    connection = Redis.from_url(cfg.queue.redis_url)
    worker = Worker([Queue(cfg.queue.name, connection=connection)], connection=connection)
    logger.info("worker listening on %s (%s)", cfg.queue.name, cfg.queue.redis_url)
    worker.work()
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    app_logger = setup_logging()

    # NOTE: [] を渡されたときに sys.argv[1:] を読まないよう None のときだけ参照する
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug or getattr(args, "debug_sub", False):
        set_debug(app_logger)
        app_logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error("config: %s", e)
        return EXIT_FATAL

    if args.command == "ingest":
        return _ingest(cfg, args.file, args.estimation_id)
    if args.command == "inspect":
        return _inspect(cfg, args.file, args.rows)
    if args.command == "serve":
        return _serve(cfg, args.host, args.port)
    return _worker(cfg)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
