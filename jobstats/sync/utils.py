"""Shared utility functions for the jobstats sync module."""

from datetime import datetime, timedelta
from typing import Iterator

# Layout of --starttime/--endtime arguments and of the watermark file
DATETIME_LAYOUT = "%Y-%m-%dT%H:%M:%S"

# Layout sacct emits when SLURM_TIME_FORMAT carries the UTC offset
DATETIME_LAYOUT_TZ = "%Y-%m-%dT%H:%M:%S%z"


# ---------------------------------------------------------------------------
# Date helpers (scheduler-agnostic)
# ---------------------------------------------------------------------------

def format_datetime(dt: datetime) -> str:
    """Format datetime as YYYY-MM-DDTHH:MM:SS (local wall-clock time)."""
    return dt.strftime(DATETIME_LAYOUT)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a scheduler timestamp into an aware datetime.

    Accepts both the offset-carrying form sacct emits
    (``2024-01-15T10:00:00+0100``) and the plain form, which is taken as
    local time.  Returns None for sentinels such as ``Unknown`` or ``None``.

    Examples:
        >>> parse_datetime("2024-01-15T10:00:00+0000").isoformat()
        '2024-01-15T10:00:00+00:00'
        >>> parse_datetime("Unknown") is None
        True
    """
    if not value:
        return None
    value = value.strip()
    for layout in (DATETIME_LAYOUT_TZ, DATETIME_LAYOUT):
        try:
            dt = datetime.strptime(value, layout)
        except ValueError:
            continue
        return dt if dt.tzinfo else dt.astimezone()
    return None


def day_windows(start: datetime, end: datetime) -> Iterator[tuple[datetime, datetime]]:
    """Split [start, end] into consecutive windows of at most one day.

    Args:
        start: Window start
        end: Window end

    Yields:
        (chunk_start, chunk_end) tuples covering the whole interval
    """
    current = start
    while end - current > timedelta(days=1):
        nxt = current + timedelta(days=1)
        yield current, nxt
        current = nxt
    yield current, end


# ---------------------------------------------------------------------------
# Type coercion helpers
# ---------------------------------------------------------------------------

def safe_int(value, default=None):
    """Safely convert value to integer.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Integer value or default
    """
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
