"""Persistence of the "jobs collected up to" timestamp.

The watermark lives in a small plain-text file next to the database holding
a single ``YYYY-MM-DDTHH:MM:SS`` timestamp.  It is read once at startup and
rewritten, as a whole, after every successful collection step.
"""

import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from ..sync.utils import DATETIME_LAYOUT, format_datetime

logger = logging.getLogger(__name__)


def read_watermark(path: str | Path) -> datetime | None:
    """Read the watermark file.

    Returns:
        The stored timestamp (naive, local time), or None when the file is
        missing, unreadable or does not hold a valid timestamp.  The file is
        never modified here.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No watermark file at {path}")
        return None

    try:
        content = path.read_text()
    except OSError as e:
        logger.error(f"Failed to read watermark file {path}: {e}")
        return None

    try:
        return datetime.strptime(content.strip(), DATETIME_LAYOUT)
    except ValueError as e:
        logger.error(f"Failed to parse timestamp {content.strip()!r} in watermark file {path}: {e}")
        return None


def write_watermark(path: str | Path, when: datetime) -> None:
    """Replace the watermark file with *when*.

    Written to a temporary file in the same directory and renamed over the
    target, so readers never see a partial timestamp.

    Raises:
        OSError: If the file cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(format_datetime(when))
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def resolve_start(path: str | Path, initial_lookback_days: int, now: datetime | None = None) -> datetime:
    """Return the watermark, or ``now - initial_lookback_days`` without one."""
    watermark = read_watermark(path)
    if watermark is not None:
        logger.info(f"Resuming job collection from {format_datetime(watermark)}")
        return watermark

    now = now or datetime.now()
    start = now - timedelta(days=initial_lookback_days)
    logger.info(f"Collecting jobs from initial window start {format_datetime(start)}")
    return start
