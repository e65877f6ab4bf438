"""Shared fixtures for jobstats tests."""

from dataclasses import replace
from pathlib import Path

import pytest

from jobstats.database.models import BatchJob
from jobstats.database.store import JobStore
from jobstats.exceptions import CollectorError
from jobstats.sync.base import BatchScheduler

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def make_job(jobid="1001", **kwargs) -> BatchJob:
    """Build a plausible completed job, overriding any field via kwargs."""
    defaults = dict(
        jobid=jobid,
        uuid=f"uuid-{jobid}",
        cluster="hpc",
        partition="cpu",
        account="acc1",
        usr="usr1",
        uid="1000",
        submit="2024-02-13T10:00:00+0100",
        start="2024-02-13T10:05:00+0100",
        end="2024-02-13T11:05:00+0100",
        elapsed="01:00:00",
        elapsedraw=3600,
        state="COMPLETED",
        nnodes="1",
        ncpus="8",
        nodelist="compute-0",
        nodelistexp="compute-0",
    )
    defaults.update(kwargs)
    return BatchJob(**defaults)


class FakeScheduler(BatchScheduler):
    """Scheduler returning canned jobs, optionally failing on given calls."""

    NAME = "fake"

    def __init__(self, jobs=None, fail_on_calls=(), ignored=()):
        self.jobs = list(jobs or [])
        self.ignored = list(ignored)
        self.fail_on_calls = set(fail_on_calls)
        self.calls = []

    def get_jobs(self, start, end):
        self.calls.append((start, end))
        if len(self.calls) in self.fail_on_calls:
            raise CollectorError("sacct: exited with status 1")
        return [replace(job) for job in self.jobs]

    def ignored_jobs(self):
        return list(self.ignored)


@pytest.fixture
def sacct_output():
    """Raw sacct --parsable2 output: 2 valid jobs among steps, short and broken rows."""
    return (FIXTURES_DIR / "sacct_output.txt").read_text()


@pytest.fixture
def store(tmp_path):
    """Initialised job store in a temporary directory.

    Retention is long enough that the fixed 2024 timestamps used by the
    tests are never swept.
    """
    job_store = JobStore(tmp_path / "data" / "jobstats.db", retention_days=36500)
    job_store.setup()
    yield job_store
    job_store.close()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler(jobs=[make_job("1001"), make_job("1002", usr="usr2")])


@pytest.fixture
def job_factory():
    """The make_job() helper, for tests that need custom jobs."""
    return make_job


@pytest.fixture
def scheduler_factory():
    """The FakeScheduler class, for tests that need custom behaviour."""
    return FakeScheduler
