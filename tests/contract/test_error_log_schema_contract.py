from __future__ import annotations

import json
import re
from pathlib import Path

from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.models.error_record import ErrorType, Severity

"""Error log (JSON Lines) contract.

- file name: logs/errors-YYYYMMDD-HHMMSS.log
- one JSON object per line with type, severity, message, timestamp (UTC, 'Z')
- sheet / assetId / chunkIndex present only when known
"""

REQUIRED = {"type", "severity", "message", "timestamp"}
OPTIONAL = {"sheet", "assetId", "chunkIndex"}
FILENAME = re.compile(r"^errors-[0-9]{8}-[0-9]{6}\.log$")


def test_error_log_lines_follow_contract(temp_workdir: Path):
    buf = ErrorLogBuffer()
    buf.record(ErrorType.DOWNLOAD, "source not found")
    buf.record(ErrorType.UPLOAD, "upload timed out", sheet="05 Fotos", asset_id="img-5.2-0a1b2c3d")
    buf.record(ErrorType.CHUNKING, "encode failed", chunk_index=0)
    buf.warn(ErrorType.HIERARCHY, "code too deep")
    path = buf.flush()

    assert FILENAME.match(path.name)
    types = {t.value for t in ErrorType}
    severities = {s.value for s in Severity}
    for raw in path.read_text(encoding="utf-8").splitlines():
        obj = json.loads(raw)
        assert REQUIRED <= set(obj) <= REQUIRED | OPTIONAL
        assert obj["type"] in types
        assert obj["severity"] in severities
        assert obj["timestamp"].endswith("Z")


def test_error_types_are_closed():
    assert {t.value for t in ErrorType} == {
        "sheet_processing",
        "image_extraction",
        "upload",
        "download",
        "conversion",
        "chunking",
        "hierarchy",
    }
