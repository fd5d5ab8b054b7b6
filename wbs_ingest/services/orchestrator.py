from __future__ import annotations

import json
import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import Any

from wbs_ingest.config.loader import AppConfig
from wbs_ingest.excel.reader import BreakdownReader, ExtractedSheet
from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.models.chunk import ChunkRef
from wbs_ingest.models.error_record import IMAGE_ERROR_TYPES, ErrorType
from wbs_ingest.models.job import IngestionError, IngestionJob, JobState
from wbs_ingest.models.processing_result import IngestionResult, ProcessingStats
from wbs_ingest.services.assets import AssetExtractionResult, AssetExtractor
from wbs_ingest.services.chunking import ChunkFile, chunk_key, plan_windows, write_chunks
from wbs_ingest.services.context import JobCancelled, JobContext, ProgressCallback
from wbs_ingest.services.hierarchy import ConceptTree, HierarchyBuilder
from wbs_ingest.services.manifest import (
    build_manifest,
    concept_asset_map,
    main_data_key,
    tree_key,
    write_manifest,
)
from wbs_ingest.storage.blob_store import BlobStore, BlobStoreError
from wbs_ingest.storage.retry import call_with_retry

"""Ingestion orchestration for one job.

Stages run sequentially on a per-job JobContext:

    DOWNLOADING -> EXTRACTING -> ASSET_PROCESSING -> CHUNKING -> UPLOADING -> FINALIZING -> DONE

- DOWNLOADING / EXTRACTING failures are fatal: the job moves to FAILED and the
  IngestionError propagates (the task queue records it and may retry the job)
- Later stages never fail the job; their problems are ProcessingErrors in the manifest
- The manifest is written last, after every upload has settled. A manifest write failure
  propagates without a state change so the queue retries the whole job
- The cancel event is checked between stages; uploaded artifacts are left in place
"""

__all__ = [
    "IngestionError",
    "SourceDownloadError",
    "JobCancelled",
    "run_ingestion",
]

logger = logging.getLogger(__name__)

SOURCE_FILENAME = "source.xlsx"
SPOOL_FILENAME = "rows.jsonl"


class SourceDownloadError(IngestionError):
    """The source workbook could not be fetched from the blob store."""


def run_ingestion(
    job: IngestionJob,
    store: BlobStore,
    config: AppConfig,
    *,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
    error_log: ErrorLogBuffer | None = None,
    work_dir: Path | None = None,
) -> IngestionResult:
    """Run one ingestion job end to end.

    Args:
        job: Job payload (estimation id + source key)
        store: Blob store holding the source and receiving every artifact
        config: Application configuration
        on_progress: Called with ``(percent, message)`` at stage boundaries
        cancel_event: When set, the job stops at the next stage boundary
        error_log: Buffer to record partial failures into (a new one by default)
        work_dir: Parent directory for the job's temporary spool directory

    Returns:
        IngestionResult summary of the DONE job

    Raises:
        SourceDownloadError: Source missing or unreadable from storage (job FAILED)
        WorkbookReadError: Source is not a readable workbook (job FAILED)
        BreakdownSheetNotFound: No sheet matches the breakdown patterns (job FAILED)
        JobCancelled: The cancel event was set
        BlobStoreError: The manifest could not be written after retries
    """
    ctx = JobContext(
        job=job,
        config=config,
        error_log=error_log if error_log is not None else ErrorLogBuffer(),
        cancel_event=cancel_event or threading.Event(),
        on_progress=on_progress,
    )
    with tempfile.TemporaryDirectory(prefix=f"wbs-{job.estimation_id}-", dir=work_dir) as tmp:
        return _Pipeline(ctx, store, Path(tmp)).run()


class _Pipeline:
    def __init__(self, ctx: JobContext, store: BlobStore, work_dir: Path) -> None:
        self.ctx = ctx
        self.store = store
        self.work_dir = work_dir
        self.settings = ctx.config.ingestion
        self.prefix = ctx.job.output_prefix
        self.hierarchy = HierarchyBuilder(self.settings.max_tree_depth, ctx.error_log)

    def _put(self, key: str, data: bytes, content_type: str) -> int:
        return call_with_retry(
            self.store.put,
            key,
            data,
            content_type,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
        )

    def run(self) -> IngestionResult:
        started = time.monotonic()
        job = self.ctx.job
        logger.info("job %s: start (source=%s)", job.estimation_id, job.source_key)

        source = self._download()
        self.ctx.check_cancelled()
        sheet = self._extract(source)
        self.ctx.check_cancelled()
        assets = self._process_assets(source, sheet)
        self.ctx.check_cancelled()
        chunk_files = self._chunk(sheet)
        self.ctx.check_cancelled()
        chunks, tree, tree_key_value, inline = self._upload(sheet, chunk_files)
        self.ctx.check_cancelled()
        return self._finalize(sheet, assets, chunks, tree, tree_key_value, inline, started)

    # -- fatal stages -------------------------------------------------------------------

    def _download(self) -> Path:
        self.ctx.advance(JobState.DOWNLOADING)
        self.ctx.report(5, "downloading source workbook")
        target = self.work_dir / SOURCE_FILENAME
        try:
            call_with_retry(
                self.store.download_to,
                self.ctx.job.source_key,
                target,
                max_attempts=self.settings.max_retries,
                base_delay=self.settings.retry_base_delay,
            )
        except (BlobStoreError, OSError) as e:
            self.ctx.error_log.record(ErrorType.DOWNLOAD, f"download of {self.ctx.job.source_key} failed: {e}")
            self.ctx.fail()
            raise SourceDownloadError(str(e)) from e
        return target

    def _extract(self, source: Path) -> ExtractedSheet:
        self.ctx.advance(JobState.EXTRACTING)
        self.ctx.report(15, "extracting breakdown rows")
        reader = BreakdownReader(source, self.settings, self.ctx.style_table)
        try:
            sheet = reader.extract(
                self.work_dir / SPOOL_FILENAME,
                on_row=lambda row, label: self.hierarchy.observe_row(row.concept_code, label),
            )
        except IngestionError as e:
            self.ctx.error_log.record(ErrorType.SHEET_PROCESSING, str(e))
            self.ctx.fail()
            raise
        logger.info(
            "job %s: sheet '%s' rows=%d columns=%d styles=%d",
            self.ctx.job.estimation_id,
            sheet.sheet_name,
            sheet.row_count,
            len(sheet.columns),
            len(self.ctx.style_table),
        )
        self.ctx.report(40, f"extracted {sheet.row_count} rows")
        return sheet

    # -- degradable stages --------------------------------------------------------------

    def _process_assets(self, source: Path, sheet: ExtractedSheet) -> AssetExtractionResult:
        self.ctx.advance(JobState.ASSET_PROCESSING)
        self.ctx.report(45, "processing embedded images")
        try:
            result = AssetExtractor(self.ctx, self.store).run(
                source,
                sheet.sheet_name,
                on_asset=lambda a: self.hierarchy.observe_asset(a.concept_code, a.type),
            )
        except Exception as e:
            logger.exception("job %s: asset stage aborted", self.ctx.job.estimation_id)
            self.ctx.error_log.record(ErrorType.IMAGE_EXTRACTION, f"asset stage aborted: {e}")
            result = AssetExtractionResult()
        self.ctx.report(70, f"stored {result.images_processed}/{result.images_found} images")
        return result

    def _chunk(self, sheet: ExtractedSheet) -> list[ChunkFile]:
        self.ctx.advance(JobState.CHUNKING)
        self.ctx.report(75, "writing row chunks")
        windows = plan_windows(sheet.row_count, self.settings.chunk_size)
        files: list[ChunkFile] = []
        try:
            for chunk_file in write_chunks(sheet.iter_rows(), windows, sheet.sheet_id, self.work_dir / "chunks"):
                files.append(chunk_file)
        except (ValueError, OSError) as e:
            self.ctx.error_log.record(
                ErrorType.CHUNKING, f"chunk encoding stopped: {e}", sheet=sheet.sheet_name, chunk_index=len(files)
            )
        return files

    def _upload(
        self, sheet: ExtractedSheet, chunk_files: list[ChunkFile]
    ) -> tuple[list[ChunkRef], ConceptTree | None, str | None, bool]:
        self.ctx.advance(JobState.UPLOADING)
        self.ctx.report(85, "uploading chunks and indexes")

        chunks: list[ChunkRef] = []
        for chunk_file in chunk_files:
            window = chunk_file.window
            key = chunk_key(self.prefix, sheet.sheet_id, window.index)
            try:
                size = self._put(key, chunk_file.path.read_bytes(), "application/gzip")
            except (BlobStoreError, OSError) as e:
                self.ctx.error_log.record(
                    ErrorType.UPLOAD, f"chunk upload failed: {e}", sheet=sheet.sheet_name, chunk_index=window.index
                )
                continue
            chunks.append(
                ChunkRef(
                    sheet_id=sheet.sheet_id,
                    index=window.index,
                    start_row=window.start_row,
                    end_row=window.end_row,
                    key=key,
                    size_bytes=size,
                )
            )

        tree: ConceptTree | None = None
        tree_key_value: str | None = None
        try:
            tree = self.hierarchy.build()
        except (KeyError, ValueError) as e:
            self.ctx.error_log.record(ErrorType.HIERARCHY, f"tree build failed: {e}")
        if tree is not None:
            payload = {"estimationId": self.ctx.job.estimation_id, **tree.to_dict()}
            try:
                tree_key_value = tree_key(self.prefix)
                self._put(tree_key_value, _json_bytes(payload), "application/json")
            except (BlobStoreError, OSError) as e:
                tree_key_value = None
                self.ctx.error_log.record(ErrorType.UPLOAD, f"tree upload failed: {e}")

        inline = sheet.row_count <= self.settings.inline_row_limit
        try:
            self._put(main_data_key(self.prefix), _json_bytes(self._main_data(sheet, inline)), "application/json")
        except (BlobStoreError, OSError) as e:
            self.ctx.error_log.record(ErrorType.UPLOAD, f"main data upload failed: {e}", sheet=sheet.sheet_name)
        return chunks, tree, tree_key_value, inline

    def _main_data(self, sheet: ExtractedSheet, inline: bool) -> dict[str, Any]:
        return {
            "estimationId": self.ctx.job.estimation_id,
            "sheetName": sheet.sheet_name,
            "rowCount": sheet.row_count,
            "columns": [c.to_dict() for c in sheet.columns],
            "inline": inline,
            "rows": [row.to_plain() for row in sheet.iter_rows()] if inline else [],
        }

    def _finalize(
        self,
        sheet: ExtractedSheet,
        assets: AssetExtractionResult,
        chunks: list[ChunkRef],
        tree: ConceptTree | None,
        tree_key_value: str | None,
        inline: bool,
        started: float,
    ) -> IngestionResult:
        self.ctx.advance(JobState.FINALIZING)
        self.ctx.report(95, "writing manifest")
        windows = plan_windows(sheet.row_count, self.settings.chunk_size)
        stats = ProcessingStats(
            total_sheets=sheet.total_sheets,
            sheets_processed=1 + assets.sheets_scanned,
            main_sheet_rows=sheet.row_count,
            images_found=assets.images_found,
            images_processed=assets.images_processed,
            images_failed=assets.images_failed,
            images_duplicate=assets.duplicates,
            images_unassigned=assets.images_unassigned,
            chunks_written=len(chunks),
            chunks_failed=len(windows) - len(chunks),
            style_count=len(self.ctx.style_table),
            total_processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        manifest = build_manifest(
            self.ctx.job,
            sheet,
            chunk_size=self.settings.chunk_size,
            chunks=chunks,
            styles=self.ctx.style_table,
            assets=assets.assets,
            stats=stats,
            error_log=self.ctx.error_log,
            tree_key_value=tree_key_value,
            concept_count=tree.total_nodes if tree is not None else 0,
            inline_rows=inline,
        )
        key = write_manifest(
            self.store,
            self.prefix,
            manifest,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
        )
        self.ctx.advance(JobState.DONE)
        self.ctx.report(100, "done")

        image_errors = self.ctx.error_log.count(*IMAGE_ERROR_TYPES)
        if image_errors:
            logger.warning("job %s: %d image failures recorded", self.ctx.job.estimation_id, image_errors)
        return IngestionResult(
            estimation_id=self.ctx.job.estimation_id,
            manifest_key=key,
            main_data_key=main_data_key(self.prefix),
            main_sheet_name=sheet.sheet_name,
            main_sheet_rows=sheet.row_count,
            main_sheet_columns=len(sheet.columns),
            assets_total=len(assets.assets),
            assets_by_concept=len(concept_asset_map(assets.assets)),
            assets_unassigned=assets.images_unassigned,
            stats=stats,
            error_count=len(self.ctx.error_log.errors),
            warning_count=len(self.ctx.error_log.warnings),
            job_id=self.ctx.job.job_id,
            states=self.ctx.state_names,
        )


def _json_bytes(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
