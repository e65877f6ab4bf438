"""Job storage: ORM table, SQLite engine, store and watermark file."""

from .models import COLUMN_NAMES, JOB_COLUMNS, BatchJob, IgnoredJob, Job, jobs_table
from .session import get_engine, init_db
from .store import JobStore
from .watermark import read_watermark, resolve_start, write_watermark

__all__ = [
    "BatchJob",
    "COLUMN_NAMES",
    "IgnoredJob",
    "JOB_COLUMNS",
    "Job",
    "JobStore",
    "get_engine",
    "init_db",
    "jobs_table",
    "read_watermark",
    "resolve_start",
    "write_watermark",
]
