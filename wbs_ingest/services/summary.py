from __future__ import annotations

from ..models.processing_result import IngestionResult

"""SUMMARY line rendering for a completed ingestion job.

Format:
SUMMARY estimation={id} rows={rows} columns={cols} chunks={written}/{total} styles={n}
images={processed}/{found} failed={failed} duplicates={n} unassigned={n} errors={n}
warnings={n} elapsed_sec={elapsed}
"""


def _format_seconds(ms: int) -> str:
    seconds = ms / 1000
    if seconds == int(seconds):
        return str(int(seconds))
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: IngestionResult) -> str:
    """Render the SUMMARY line for ``result`` (single line, space separated key=value).

    Examples:
        >>> render_summary_line(result)  # doctest: +SKIP
        'SUMMARY estimation=est-1 rows=1523 columns=8 chunks=1/1 styles=12 images=24/24 ...'
    """
    stats = result.stats
    total_chunks = stats.chunks_written + stats.chunks_failed
    return (
        f"SUMMARY estimation={result.estimation_id} "
        f"rows={stats.main_sheet_rows} "
        f"columns={result.main_sheet_columns} "
        f"chunks={stats.chunks_written}/{total_chunks} "
        f"styles={stats.style_count} "
        f"images={stats.images_processed}/{stats.images_found} "
        f"failed={stats.images_failed} "
        f"duplicates={stats.images_duplicate} "
        f"unassigned={stats.images_unassigned} "
        f"errors={result.error_count} "
        f"warnings={result.warning_count} "
        f"elapsed_sec={_format_seconds(stats.total_processing_time_ms)}"
    )
