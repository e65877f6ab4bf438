"""Periodic collection: scheduler -> metrics enrichment -> store -> watermark."""

import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

from .database.store import JobStore
from .database.watermark import resolve_start, write_watermark
from .exceptions import CollectorError, StoreError, TSDBError
from .sync.base import BatchScheduler
from .sync.utils import day_windows, format_datetime
from .tsdb import MetricsEnricher, SeriesCleaner

logger = logging.getLogger(__name__)


class CollectionCycle:
    """Drive one scheduler collector, the metrics enricher and the job store.

    The collection start time is resolved once, at construction, from the
    watermark file.  It only moves forward after a window has been stored,
    and the watermark file is rewritten at the same moment.
    """

    def __init__(
        self,
        scheduler: BatchScheduler,
        store: JobStore,
        enricher: MetricsEnricher,
        watermark_file: str | Path,
        initial_lookback_days: int = 1,
        vacuum_interval_days: int = 7,
        chunk_pause: float = 2.0,
        now: datetime | None = None,
        cleaner: SeriesCleaner | None = None,
    ):
        self.scheduler = scheduler
        self.store = store
        self.enricher = enricher
        self.watermark_file = Path(watermark_file)
        self.vacuum_interval = timedelta(days=vacuum_interval_days)
        self.chunk_pause = chunk_pause
        self.cleaner = cleaner

        now = now or datetime.now()
        self.start = resolve_start(self.watermark_file, initial_lookback_days, now=now)
        self.last_vacuum = now
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def collect_window(self, start: datetime, end: datetime) -> int:
        """Collect, enrich and store the jobs of one window.

        Returns:
            Number of jobs stored

        Raises:
            CollectorError: If the scheduler cannot be queried
            StoreError: If the jobs cannot be stored
        """
        jobs = self.scheduler.get_jobs(start, end)
        jobs, errors = self.enricher.enrich(jobs)
        if errors:
            logger.warning(
                f"Storing {len(jobs)} jobs without {len(errors)} metric categories "
                f"for window {format_datetime(start)} - {format_datetime(end)}"
            )
        return self.store.insert(jobs)

    def run_once(self, now: datetime | None = None, stop_event: threading.Event | None = None) -> bool:
        """Collect everything from the current start time up to ``now``.

        Windows longer than a day are processed one day at a time, pausing
        briefly between days to spread the load on the accounting database.
        A failing day aborts the rest of the cycle; days already stored stay
        stored and the watermark points at the last of them.

        Returns:
            True when the whole window was collected
        """
        with self._lock:
            now = now or datetime.now()
            if now <= self.start:
                logger.debug(f"Nothing to collect: start {format_datetime(self.start)} is not in the past")
                return True

            windows = list(day_windows(self.start, now))
            if len(windows) > 1:
                logger.info(f"Collecting {len(windows)} daily windows from {format_datetime(self.start)}")

            ok = True
            for i, (start, end) in enumerate(windows):
                if i and stop_event is not None:
                    if stop_event.wait(self.chunk_pause):
                        logger.info("Stop requested; remaining windows left for the next run")
                        return False
                elif i and self.chunk_pause:
                    time.sleep(self.chunk_pause)

                try:
                    self.collect_window(start, end)
                except (CollectorError, StoreError) as e:
                    logger.error(
                        f"Collection of window {format_datetime(start)} - {format_datetime(end)} failed, "
                        f"retrying on next cycle: {e}"
                    )
                    return False

                self.start = end
                try:
                    write_watermark(self.watermark_file, end)
                except OSError as e:
                    logger.error(f"Failed to update watermark file {self.watermark_file}: {e}")
                    ok = False
                self.clean_series()

            self.maybe_vacuum(now)
            return ok

    def clean_series(self) -> int:
        """Remove the metric series of the jobs the last window dropped as too short.

        Failures are logged only; the jobs are already stored.

        Returns:
            Number of series matchers deleted
        """
        if self.cleaner is None:
            return 0
        ignored = self.scheduler.ignored_jobs()
        try:
            return self.cleaner.delete_jobs(ignored)
        except TSDBError as e:
            logger.warning(f"Failed to delete TSDB series of {len(ignored)} ignored jobs: {e}")
            return 0

    def maybe_vacuum(self, now: datetime | None = None) -> bool:
        """Vacuum the store when the vacuum interval has elapsed.

        Returns:
            True if a vacuum ran successfully
        """
        now = now or datetime.now()
        if now - self.last_vacuum < self.vacuum_interval:
            return False
        try:
            self.store.vacuum()
        except StoreError as e:
            logger.error(f"Vacuum failed: {e}")
            return False
        self.last_vacuum = now
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self, interval: float, stop_event: threading.Event) -> None:
        """Run a cycle now and then every ``interval`` seconds until stopped.

        A cycle that overruns the interval delays the next one rather than
        overlapping it.  No exception escapes; the store is closed on exit.
        """
        logger.info(f"Collecting jobs every {interval} seconds")
        try:
            while not stop_event.is_set():
                started = time.monotonic()
                try:
                    self.run_once(stop_event=stop_event)
                except Exception:
                    logger.exception("Unexpected error in collection cycle")
                elapsed = time.monotonic() - started
                stop_event.wait(max(interval - elapsed, 0))
        finally:
            self.store.close()
            self.enricher.client.close()
            logger.info("Collection loop stopped")
