"""Configuration for the jobstats collector.

All env-var reading is centralised here.  Call load_dotenv() at import time
so the class attrs below pick up values from a .env file if present.

Quickstart:
  Copy .env.example -> .env and set TSDB_WEBURL plus any overrides.
"""

import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .exceptions import ConfigurationError

# Load .env on import.  Calling this multiple times is harmless.
load_dotenv(find_dotenv())

# Default data directory (relative to project root)
_DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class JobStatsConfig:
    # ------------------------------------------------------------ Storage
    DATA_DIR = Path(os.getenv("JOBSTATS_DATA_DIR", _DEFAULT_DATA_DIR))
    DB_FILE = os.getenv("JOBSTATS_DB_FILE", "jobstats.db")
    WATERMARK_FILE = os.getenv("JOBSTATS_WATERMARK_FILE", "lastjobsupdatetime")
    RETENTION_DAYS = int(os.getenv("JOBSTATS_RETENTION_DAYS", "365"))

    # ---------------------------------------------------------- Collection
    INITIAL_LOOKBACK_DAYS = int(os.getenv("JOBSTATS_INITIAL_LOOKBACK_DAYS", "1"))
    UPDATE_INTERVAL = int(os.getenv("JOBSTATS_UPDATE_INTERVAL", "900"))  # seconds
    VACUUM_INTERVAL_DAYS = int(os.getenv("JOBSTATS_VACUUM_INTERVAL_DAYS", "7"))

    # ------------------------------------------------------------ Scheduler
    SCHEDULER = os.getenv("JOBSTATS_SCHEDULER", "slurm").lower()
    SLURM_SACCT_PATH = os.getenv("JOBSTATS_SLURM_SACCT_PATH", "")
    SLURM_USER = os.getenv("JOBSTATS_SLURM_USER", "slurm")
    JOB_CUTOFF_SECONDS = int(os.getenv("JOBSTATS_JOB_CUTOFF_SECONDS", "60"))

    # ----------------------------------------------------------------- TSDB
    TSDB_WEBURL = os.getenv("TSDB_WEBURL", "")
    TSDB_SKIP_TLS_VERIFY = _env_bool("JOBSTATS_TSDB_SKIP_TLS_VERIFY")
    # Delete the series of jobs dropped by JOBSTATS_JOB_CUTOFF_SECONDS (admin API)
    TSDB_CLEANUP = _env_bool("JOBSTATS_TSDB_CLEANUP")

    # -------------------------------------------------------------- Logging
    LOG_LEVEL = os.getenv("JOBSTATS_LOG_LEVEL", "INFO").upper()

    # ---------------------------------------------------------------- Paths
    @classmethod
    def db_path(cls) -> Path:
        """Return the SQLite database path.

        ``JOBSTATS_DB_FILE`` may be absolute, in which case ``DATA_DIR`` is ignored.
        """
        return cls.DATA_DIR / cls.DB_FILE

    @classmethod
    def watermark_path(cls) -> Path:
        return cls.DATA_DIR / cls.WATERMARK_FILE

    # ------------------------------------------------------------ Validate
    @classmethod
    def validate(cls):
        """Fail fast at startup on nonsensical periods."""
        checks = {
            "JOBSTATS_RETENTION_DAYS": cls.RETENTION_DAYS,
            "JOBSTATS_UPDATE_INTERVAL": cls.UPDATE_INTERVAL,
            "JOBSTATS_VACUUM_INTERVAL_DAYS": cls.VACUUM_INTERVAL_DAYS,
        }
        bad = [k for k, v in checks.items() if v <= 0]
        if cls.INITIAL_LOOKBACK_DAYS < 0:
            bad.append("JOBSTATS_INITIAL_LOOKBACK_DAYS")
        if cls.JOB_CUTOFF_SECONDS < 0:
            bad.append("JOBSTATS_JOB_CUTOFF_SECONDS")
        if cls.TSDB_CLEANUP and not cls.TSDB_WEBURL:
            bad.append("JOBSTATS_TSDB_CLEANUP (requires TSDB_WEBURL)")
        if bad:
            raise ConfigurationError(
                "Invalid values for environment variables:\n"
                + "".join(f"  {k}\n" for k in bad)
                + "\nSee .env.example for a template."
            )
