from __future__ import annotations

import hashlib
import io
import logging
import threading
import zipfile
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from openpyxl.workbook.workbook import Workbook
from PIL import Image, UnidentifiedImageError

from wbs_ingest.excel.drawings import (
    CodeCellIndex,
    DrawingPartError,
    ImageAnchor,
    list_sheet_parts,
    read_media,
    scan_sheet_drawings,
)
from wbs_ingest.excel.reader import WorkbookReadError, open_workbook
from wbs_ingest.models.asset_record import AssetRecord, AssetType
from wbs_ingest.models.error_record import ErrorType, utc_timestamp
from wbs_ingest.services.context import JobContext
from wbs_ingest.storage.blob_store import BlobStore, BlobStoreError
from wbs_ingest.storage.retry import call_with_retry

"""Asset extraction: anchored images -> WebP -> blob store.

For every sheet except the breakdown sheet, picture anchors are read from the drawing
parts, each image is attributed to a concept code (CodeCellIndex), re-encoded to WebP and
uploaded through a fixed-size thread pool. A bounded semaphore (2x pool size) caps how many
images are held in memory at once. Every failure becomes a ProcessingError and the loop
moves on.
"""

__all__ = [
    "AssetExtractionResult",
    "AssetExtractor",
    "convert_to_webp",
    "asset_id_for",
    "asset_key",
    "UNASSIGNED",
]

logger = logging.getLogger(__name__)

UNASSIGNED = "unassigned"
UNASSIGNED_DIR = "_unassigned"

AssetCallback = Callable[[AssetRecord], None]

# worker outcomes
STORED = "stored"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class AssetExtractionResult:
    assets: list[AssetRecord] = field(default_factory=list)
    images_found: int = 0
    images_failed: int = 0
    duplicates: int = 0
    sheets_scanned: int = 0
    sheets_failed: int = 0

    @property
    def images_processed(self) -> int:
        return len(self.assets)

    @property
    def images_unassigned(self) -> int:
        return sum(1 for a in self.assets if not a.is_assigned)


def convert_to_webp(data: bytes, quality: int = 85, max_dimension: int = 2048) -> tuple[bytes, int, int]:
    """Re-encode image bytes as WebP, shrinking so the longest side is ``max_dimension``.

    Returns:
        (webp bytes, width, height)

    Raises:
        OSError: Unreadable or unsupported image (includes UnidentifiedImageError)
        Image.DecompressionBombError: Image exceeds Pillow's pixel limit
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA"):
            has_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
            img = img.convert("RGBA" if has_alpha else "RGB")
        if max(img.size) > max_dimension:
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="WEBP", quality=quality)
        return out.getvalue(), img.width, img.height


def asset_id_for(webp: bytes, code: str | None) -> str:
    owner = code or UNASSIGNED
    digest = hashlib.sha1(webp + owner.encode("utf-8")).hexdigest()[:8]
    return f"img-{owner}-{digest}"


def asset_key(prefix: str, code: str | None, asset_id: str) -> str:
    return f"{prefix}/assets/{code or UNASSIGNED_DIR}/{asset_id}.webp"


class AssetExtractor:
    """Runs the asset stage of one job."""

    def __init__(self, ctx: JobContext, store: BlobStore) -> None:
        self.ctx = ctx
        self.store = store
        self.settings = ctx.config.ingestion
        self._seen: set[str] = set()
        self._seen_lock = threading.Lock()

    def run(
        self,
        workbook_path: Path,
        breakdown_sheet: str,
        on_asset: AssetCallback | None = None,
    ) -> AssetExtractionResult:
        """Extract every anchored image outside the breakdown sheet.

        Args:
            workbook_path: Spooled source workbook
            breakdown_sheet: Name of the breakdown sheet (skipped)
            on_asset: Called from the calling thread for each stored asset, in sorted order

        Returns:
            AssetExtractionResult with records sorted by (sheet order, row, column)
        """
        result = AssetExtractionResult()
        try:
            zf = zipfile.ZipFile(workbook_path)
        except (zipfile.BadZipFile, OSError) as e:
            self.ctx.error_log.record(ErrorType.IMAGE_EXTRACTION, f"cannot open package: {e}")
            return result

        values_wb: Workbook | None = None
        try:
            try:
                sheets = [s for s in list_sheet_parts(zf) if s.name != breakdown_sheet]
            except DrawingPartError as e:
                self.ctx.error_log.record(ErrorType.IMAGE_EXTRACTION, f"cannot read workbook part: {e}")
                return result
            try:
                values_wb = open_workbook(workbook_path, data_only=True)
            except WorkbookReadError as e:
                self.ctx.error_log.warn(ErrorType.SHEET_PROCESSING, f"cell lookup unavailable: {e}")

            pool_size = self.settings.upload_concurrency
            in_flight = threading.BoundedSemaphore(pool_size * 2)
            futures: list[Future[tuple[str, AssetRecord | None]]] = []
            with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="asset") as pool:
                for sheet in sheets:
                    try:
                        scan = scan_sheet_drawings(zf, sheet)
                    except DrawingPartError as e:
                        result.sheets_failed += 1
                        self.ctx.error_log.record(
                            ErrorType.SHEET_PROCESSING, f"drawing parts unreadable: {e}", sheet=sheet.name
                        )
                        continue
                    result.sheets_scanned += 1
                    for media in scan.absolute:
                        self.ctx.error_log.warn(
                            ErrorType.IMAGE_EXTRACTION,
                            f"absolute anchor skipped ({media})",
                            sheet=sheet.name,
                        )
                    for ref in scan.broken:
                        result.images_found += 1
                        result.images_failed += 1
                        self.ctx.error_log.record(
                            ErrorType.IMAGE_EXTRACTION, f"unresolvable picture reference {ref}", sheet=sheet.name
                        )
                    if not scan.anchors:
                        continue

                    index = self._code_index(values_wb, sheet.name, scan.anchors)
                    for anchor in sorted(scan.anchors, key=lambda a: (a.row, a.col)):
                        result.images_found += 1
                        ref = f"{anchor.sheet_name}!{anchor.cell_ref}"
                        try:
                            data = read_media(zf, anchor.media_path)
                        except (KeyError, zipfile.BadZipFile, OSError) as e:
                            result.images_failed += 1
                            self.ctx.error_log.record(
                                ErrorType.IMAGE_EXTRACTION,
                                f"media {anchor.media_path} unreadable: {e}",
                                sheet=sheet.name,
                                asset_id=ref,
                            )
                            continue
                        in_flight.acquire()
                        future = pool.submit(self._process, anchor, index.resolve(anchor), data)
                        future.add_done_callback(lambda _f: in_flight.release())
                        futures.append(future)

            for future in futures:
                outcome, record = future.result()
                if outcome == FAILED:
                    result.images_failed += 1
                elif outcome == DUPLICATE:
                    result.duplicates += 1
                elif record is not None:
                    result.assets.append(record)
        finally:
            if values_wb is not None:
                values_wb.close()
            zf.close()

        result.assets.sort(key=lambda a: a.sort_key)
        if on_asset is not None:
            for record in result.assets:
                on_asset(record)
        logger.info(
            "assets: found=%d processed=%d failed=%d duplicate=%d unassigned=%d",
            result.images_found,
            result.images_processed,
            result.images_failed,
            result.duplicates,
            result.images_unassigned,
        )
        return result

    def _code_index(self, values_wb: Workbook | None, sheet_name: str, anchors: list[ImageAnchor]) -> CodeCellIndex:
        if values_wb is not None:
            try:
                return CodeCellIndex.from_worksheet(values_wb, sheet_name, anchors)
            except (KeyError, ValueError, zipfile.BadZipFile) as e:
                self.ctx.error_log.warn(
                    ErrorType.SHEET_PROCESSING, f"cell lookup failed, using sheet name: {e}", sheet=sheet_name
                )
        return CodeCellIndex((a.row for a in anchors), (a.col for a in anchors))

    def _process(self, anchor: ImageAnchor, code: str | None, data: bytes) -> tuple[str, AssetRecord | None]:
        """Convert and upload one image (worker thread).

        Returns ``(STORED, record)``, ``(DUPLICATE, None)`` or ``(FAILED, None)``; failures are
        already in the error log when this returns.
        """
        ref = f"{anchor.sheet_name}!{anchor.cell_ref}"
        try:
            webp, width, height = convert_to_webp(
                data, self.settings.webp_quality, self.settings.max_image_dimension
            )
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            self.ctx.error_log.record(
                ErrorType.CONVERSION, f"webp conversion failed: {e}", sheet=anchor.sheet_name, asset_id=ref
            )
            return FAILED, None

        asset_id = asset_id_for(webp, code)
        with self._seen_lock:
            if asset_id in self._seen:
                logger.debug("duplicate asset %s at %s skipped", asset_id, ref)
                return DUPLICATE, None
            self._seen.add(asset_id)

        key = asset_key(self.ctx.job.output_prefix, code, asset_id)
        try:
            size = call_with_retry(
                self.store.put,
                key,
                webp,
                "image/webp",
                max_attempts=self.settings.max_retries,
                base_delay=self.settings.retry_base_delay,
            )
        except (BlobStoreError, OSError) as e:
            self.ctx.error_log.record(
                ErrorType.UPLOAD, f"upload of {key} failed: {e}", sheet=anchor.sheet_name, asset_id=asset_id
            )
            return FAILED, None

        return STORED, AssetRecord(
            id=asset_id,
            concept_code=code,
            type=AssetType.from_sheet_name(anchor.sheet_name),
            source_sheet=anchor.sheet_name,
            source_cell=anchor.cell_ref,
            filename=f"{asset_id}.webp",
            storage_path=key,
            width=width,
            height=height,
            size_bytes=size,
            format="webp",
            extracted_at=utc_timestamp(),
            sheet_index=anchor.sheet_index,
            anchor_row=anchor.row,
            anchor_col=anchor.col,
        )

