"""Failure records written next to the pipeline outputs."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from splatrig.constants import ARCHIVE_SUFFIX

logger = logging.getLogger(__name__)


def error_timestamp(now: Optional[datetime] = None) -> str:
    """Compact UTC timestamp, e.g. ``20261018143005123``."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"


def save_error(message: str, file_name: Optional[str], out_dir: Union[str, Path],
               now: Optional[datetime] = None) -> Path:
    """Write ``error_<name>_<timestamp>.txt`` holding a JSON record.

    The record is ``{timestamp, fileName, message}``.  ``file_name`` is the
    archive name the run would have produced; its suffix is dropped.
    """
    logger.error(message)
    timestamp = error_timestamp(now)
    stem = "unknown"
    if file_name:
        stem = file_name[:-len(ARCHIVE_SUFFIX)] if file_name.endswith(ARCHIVE_SUFFIX) else file_name

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"error_{stem}_{timestamp}.txt"
    record = {"timestamp": timestamp, "fileName": file_name or "unknown", "message": message}
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")
    return path
