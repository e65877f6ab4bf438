"""Abstract base class for batch scheduler collectors."""

from abc import ABC, abstractmethod
from datetime import datetime

from ..database.models import BatchJob, IgnoredJob


class BatchScheduler(ABC):
    """Abstract base for batch scheduler job collectors.

    Subclasses implement only get_jobs(); windowing, enrichment and storage
    are driven by :class:`jobstats.cycle.CollectionCycle`.
    """

    NAME: str = ""  # override in subclass

    # ------------------------------------------------------------------
    # Abstract interface: implement in each scheduler subclass
    # ------------------------------------------------------------------

    @abstractmethod
    def get_jobs(self, start: datetime, end: datetime) -> list[BatchJob]:
        """Return completed jobs that ended between ``start`` and ``end``.

        Args:
            start: Window start (local time)
            end:   Window end (local time)

        Returns:
            Parsed job records.  Rows the scheduler reports that are not
            top-level jobs (steps, never-started or too-short jobs) are
            dropped silently.

        Raises:
            CollectorError: If the scheduler's accounting tool cannot be run.
              The caller aborts the current cycle and retries on the next tick.
        """
        ...

    def ignored_jobs(self) -> list[IgnoredJob]:
        """Jobs the last get_jobs() call dropped for running too briefly.

        Their metric series can be removed from the metrics backend.
        Schedulers that do not track them return an empty list.
        """
        return []
