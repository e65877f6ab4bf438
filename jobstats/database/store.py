"""SQLite-backed job store.

Writes are insert-only: every collected job becomes a new row and old rows
are removed by the retention sweep that runs inside each insert transaction.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import StoreError
from ..sync.utils import format_datetime
from .models import BatchJob, Job, jobs_table
from .session import get_engine, init_db

logger = logging.getLogger(__name__)


class JobStore:
    """Persist BatchJob records into the ``jobs`` table.

    Call :meth:`setup` once before any other method.
    """

    def __init__(self, db_path: str | Path, retention_days: int = 365, log: logging.Logger | None = None):
        self.db_path = Path(db_path)
        self.retention_days = retention_days
        self.log = log or logger
        self.engine = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """Create the database file, table and indexes when missing.

        Raises:
            StoreError: If the database cannot be opened or initialised
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            if self.engine is None:
                self.engine = get_engine(self.db_path)
            init_db(self.engine)
        except (OSError, SQLAlchemyError) as e:
            raise StoreError(f"Failed to set up job store at {self.db_path}: {e}") from e
        self.log.info(f"Job store ready at {self.db_path}")

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def _require_engine(self):
        if self.engine is None:
            raise StoreError("Job store used before setup()")
        return self.engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, jobs: list[BatchJob]) -> int:
        """Insert jobs and apply retention in a single transaction.

        Jobs whose every field is at its zero value are skipped.  On any
        failure, including a database locked by another writer, nothing from
        this call is committed.

        Args:
            jobs: Jobs to store

        Returns:
            Number of rows inserted

        Raises:
            StoreError: If the transaction fails
        """
        engine = self._require_engine()
        rows = [job.to_row() for job in jobs if not job.is_empty()]
        skipped = len(jobs) - len(rows)
        if skipped:
            self.log.debug(f"Skipping {skipped} empty job records")

        try:
            with engine.begin() as conn:
                if rows:
                    conn.execute(insert(jobs_table), rows)
                deleted = self.delete_old(conn)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert {len(rows)} jobs: {e}") from e

        self.log.info(f"Inserted {len(rows)} jobs, removed {deleted} expired jobs")
        return len(rows)

    def retention_cutoff(self, now: datetime | None = None) -> str:
        """Oldest ``submit`` value that is still retained, as stored text."""
        now = now or datetime.now()
        return format_datetime(now - timedelta(days=self.retention_days))

    def delete_old(self, conn=None, now: datetime | None = None) -> int:
        """Delete jobs submitted before the retention cutoff.

        Submit timestamps share a fixed leading layout, so a plain text
        comparison orders them chronologically.

        Args:
            conn: Connection of an open transaction to join; a new
                transaction is used when omitted
            now: Reference time, defaults to the current local time

        Returns:
            Number of rows deleted

        Raises:
            StoreError: If run standalone and the delete fails
        """
        stmt = delete(jobs_table).where(jobs_table.c.submit < self.retention_cutoff(now))
        if conn is not None:
            return conn.execute(stmt).rowcount

        engine = self._require_engine()
        try:
            with engine.begin() as own_conn:
                deleted = own_conn.execute(stmt).rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete expired jobs: {e}") from e
        self.log.info(f"Removed {deleted} jobs older than {self.retention_days} days")
        return deleted

    def vacuum(self) -> None:
        """Compact the database file.

        Raises:
            StoreError: If VACUUM fails
        """
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                conn.execution_options(isolation_level="AUTOCOMMIT").execute(text("VACUUM"))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to vacuum {self.db_path}: {e}") from e
        self.log.info(f"Vacuumed {self.db_path}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def jobs(self, limit: int | None = None) -> list[BatchJob]:
        """Return stored jobs, most recently inserted first.

        Raises:
            StoreError: If the jobs cannot be read
        """
        engine = self._require_engine()
        stmt = select(Job).order_by(Job.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with Session(engine) as session:
                return [job.to_batch_job() for job in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read jobs from {self.db_path}: {e}") from e

    def count(self) -> int:
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(jobs_table)).scalar_one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count jobs in {self.db_path}: {e}") from e
