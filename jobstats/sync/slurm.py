"""SLURM job collection through ``sacct``.

All SLURM-specific logic lives here:
- privilege resolution for running sacct on behalf of every user
- the sacct invocation itself
- parsing of ``--parsable2`` output into BatchJob records
"""

import enum
import logging
import os
import pwd
import shutil
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from ..database.models import BatchJob, IgnoredJob
from ..exceptions import CollectorError, CommandError, IdentityError
from ..identity import uuid_from_strings
from ..nodelist import NONE_ASSIGNED, expand_nodelist
from .base import BatchScheduler
from .execute import execute, execute_as, execute_with_timeout
from .utils import format_datetime, safe_int

logger = logging.getLogger(__name__)


# Columns requested from sacct, in output order.  jobidraw reports array
# tasks as plain job ids instead of the <id>_<index> form.
SACCT_FIELDS = (
    "jobidraw", "cluster", "partition", "qos", "account",
    "group", "gid", "user", "uid",
    "submit", "start", "end", "elapsed", "elapsedraw",
    "exitcode", "state", "allocnodes", "alloccpus",
    "nodelist", "jobname", "workdir",
)
_IDX = {name: i for i, name in enumerate(SACCT_FIELDS)}

# Only jobs in a terminal state are collected
SACCT_STATES = ("CANCELLED", "COMPLETED", "FAILED", "NODE_FAIL", "PREEMPTED", "TIMEOUT")

# Makes sacct print timestamps with their UTC offset
SACCT_ENV = {"SLURM_TIME_FORMAT": "%Y-%m-%dT%H:%M:%S%z"}

DEFAULT_CUTOFF_SECONDS = 60
SUDO_TIMEOUT = 5  # seconds


class ExecMode(enum.Enum):
    """How sacct is executed.  Resolved once, in this order of preference."""

    NATIVE = "native"          # already root or the slurm user
    CAPABILITY = "capability"  # setuid/setgid to the slurm user
    SUDO = "sudo"              # non-interactive sudo
    DEGRADED = "degraded"      # run as-is; only our own jobs are visible


# ---------------------------------------------------------------------------
# sacct output parsing
# ---------------------------------------------------------------------------

def _parse_line(line: str, cutoff: int) -> BatchJob | IgnoredJob | None:
    components = line.split("|")
    if len(components) < len(SACCT_FIELDS):
        return None

    def field(name):
        return components[_IDX[name]].strip()

    # Also rejects the header row and any stray diagnostic text
    jobid = field("jobidraw")
    if not jobid.isdigit():
        return None

    nodelist = field("nodelist")
    if nodelist == NONE_ASSIGNED:
        return None

    elapsedraw = safe_int(field("elapsedraw"))
    if elapsedraw is not None and elapsedraw < cutoff:
        return IgnoredJob(jobid, field("user"), field("account"))

    nodelistexp = "|".join(expand_nodelist(nodelist))
    try:
        job_uuid = uuid_from_strings([
            jobid,
            field("uid"),
            field("account").lower(),
            (nodelistexp or nodelist).lower(),
        ])
    except IdentityError as e:
        logger.warning(f"Using raw job id {jobid} as identifier: {e}")
        job_uuid = jobid

    return BatchJob(
        jobid=jobid,
        uuid=job_uuid,
        cluster=field("cluster"),
        partition=field("partition"),
        qos=field("qos"),
        account=field("account"),
        grp=field("group"),
        gid=field("gid"),
        usr=field("user"),
        uid=field("uid"),
        submit=field("submit"),
        start=field("start"),
        end=field("end"),
        elapsed=field("elapsed"),
        elapsedraw=elapsedraw or 0,
        exitcode=field("exitcode"),
        state=field("state"),
        nnodes=field("allocnodes"),
        ncpus=field("alloccpus"),
        nodelist=nodelist,
        nodelistexp=nodelistexp,
        jobname=field("jobname"),
        workdir=field("workdir"),
    )


def parse_sacct_line(line: str, cutoff: int = DEFAULT_CUTOFF_SECONDS) -> BatchJob | None:
    """Convert one ``--parsable2`` line into a BatchJob.

    Args:
        line: ``|``-separated values in SACCT_FIELDS order
        cutoff: Jobs with fewer elapsed seconds than this are dropped

    Returns:
        BatchJob, or None when the line is malformed, not a numeric job id
        (header, job step), never ran on a node, or is shorter than ``cutoff``
    """
    result = _parse_line(line, cutoff)
    return result if isinstance(result, BatchJob) else None


def parse_sacct_output(
    output: str,
    cutoff: int = DEFAULT_CUTOFF_SECONDS,
    ignored: list[IgnoredJob] | None = None,
) -> list[BatchJob]:
    """Parse full sacct output.

    The header row fails the numeric job id check like any other non-job
    line, so nothing depends on it being the first line.  Each line is
    parsed in its own task and written into a pre-sized list by index, so
    the result keeps the sacct order regardless of scheduling.

    Args:
        output: Raw sacct stdout
        cutoff: Minimum elapsed seconds for a job to be kept
        ignored: When given, jobs dropped by ``cutoff`` are appended to it

    Returns:
        Accepted jobs in output order
    """
    lines = output.splitlines()
    slots: list[BatchJob | IgnoredJob | None] = [None] * len(lines)

    def parse(index, line):
        slots[index] = _parse_line(line, cutoff)

    with ThreadPoolExecutor(thread_name_prefix="sacct-parse") as executor:
        futures = [executor.submit(parse, i, line) for i, line in enumerate(lines)]
        for future in futures:
            future.result()

    jobs = [slot for slot in slots if isinstance(slot, BatchJob)]
    short = [slot for slot in slots if isinstance(slot, IgnoredJob)]
    if ignored is not None:
        ignored.extend(short)
    logger.debug(f"Accepted {len(jobs)} of {len(lines)} sacct lines, {len(short)} below the cutoff")
    return jobs


# ---------------------------------------------------------------------------
# SLURM collector
# ---------------------------------------------------------------------------

class SlurmCollector(BatchScheduler):
    """Collect completed jobs from SLURM accounting via sacct.

    The privilege mode is resolved once at construction and never changes.
    Each fallback stage is its own method so that failures can be injected
    independently.
    """

    NAME = "slurm"

    def __init__(
        self,
        sacct_path: str = "",
        slurm_user: str = "slurm",
        cutoff: int = DEFAULT_CUTOFF_SECONDS,
        exec_mode: ExecMode | None = None,
    ):
        """
        Args:
            sacct_path: Absolute path to sacct; searched on PATH when empty
            slurm_user: SLURM service account that can see all users' jobs
            cutoff: Jobs shorter than this many seconds are ignored
            exec_mode: Skip privilege resolution and use this mode (tests)

        Raises:
            CollectorError: If the sacct executable cannot be found
        """
        self.slurm_user = slurm_user
        self.cutoff = cutoff
        self.sacct_path = self._locate_sacct(sacct_path)
        self._uid: int | None = None
        self._gid: int | None = None
        self._ignored: list[IgnoredJob] = []
        self.exec_mode = exec_mode if exec_mode is not None else self.resolve_exec_mode()
        logger.info(f"Jobs will be retrieved from SLURM using {self.exec_mode.value} mode")

    # ------------------------------------------------------------------
    # Privilege resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _locate_sacct(sacct_path: str) -> str:
        if not sacct_path:
            found = shutil.which("sacct")
            if found is None:
                raise CollectorError("Failed to find sacct executable on PATH")
            return found
        if not os.path.isfile(sacct_path):
            raise CollectorError(f"sacct executable not found at {sacct_path}")
        return sacct_path

    def resolve_exec_mode(self) -> ExecMode:
        """Walk native -> capability -> sudo, falling back to degraded."""
        if self._native_allowed():
            return ExecMode.NATIVE
        if self._capability_allowed():
            return ExecMode.CAPABILITY
        if self._sudo_allowed():
            return ExecMode.SUDO
        logger.warning(
            f"Cannot run sacct as root, {self.slurm_user} or via sudo; "
            "only jobs of the current user will be collected"
        )
        return ExecMode.DEGRADED

    def _native_allowed(self) -> bool:
        euid = os.geteuid()
        if euid == 0:
            return True
        try:
            username = pwd.getpwuid(euid).pw_name
        except KeyError:
            return False
        if username == self.slurm_user:
            logger.debug(f"Current user {username} can see jobs of all users")
            return True
        return False

    def _capability_allowed(self) -> bool:
        try:
            entry = pwd.getpwnam(self.slurm_user)
        except KeyError:
            logger.debug(f"User {self.slurm_user} not found; skipping capability mode")
            return False

        try:
            execute_as(self.sacct_path, ["--help"], entry.pw_uid, entry.pw_gid)
        except CommandError as e:
            logger.debug(f"Cannot execute sacct as {self.slurm_user}: {e}")
            return False

        self._uid, self._gid = entry.pw_uid, entry.pw_gid
        return True

    def _sudo_allowed(self) -> bool:
        try:
            execute_with_timeout("sudo", [self.sacct_path, "--help"], SUDO_TIMEOUT)
        except CommandError as e:
            logger.debug(f"Cannot execute sacct with sudo: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def sacct_args(self, start: str, end: str) -> list[str]:
        return [
            "-D", "-X", "--allusers", "--parsable2",
            "--format", ",".join(SACCT_FIELDS),
            "--state", ",".join(SACCT_STATES),
            "--starttime", start,
            "--endtime", end,
        ]

    def run_sacct(self, start: str, end: str) -> str:
        """Execute sacct with the resolved privilege mode.

        Raises:
            CommandError: If sacct fails or cannot be started
        """
        args = self.sacct_args(start, end)
        if self.exec_mode is ExecMode.CAPABILITY:
            if self._uid is None:
                try:
                    entry = pwd.getpwnam(self.slurm_user)
                except KeyError as e:
                    raise CommandError(self.sacct_path, f"unknown user {self.slurm_user}") from e
                self._uid, self._gid = entry.pw_uid, entry.pw_gid
            return execute_as(self.sacct_path, args, self._uid, self._gid, env=SACCT_ENV)
        if self.exec_mode is ExecMode.SUDO:
            return execute("sudo", [self.sacct_path, *args], env=SACCT_ENV)
        return execute(self.sacct_path, args, env=SACCT_ENV)

    def get_jobs(self, start: datetime, end: datetime) -> list[BatchJob]:
        start_str, end_str = format_datetime(start), format_datetime(end)
        try:
            output = self.run_sacct(start_str, end_str)
        except CommandError as e:
            detail = f" ({e.stderr.strip()})" if e.stderr else ""
            logger.error(f"Failed to execute sacct between {start_str} and {end_str}: {e}{detail}")
            raise

        ignored: list[IgnoredJob] = []
        jobs = parse_sacct_output(output, self.cutoff, ignored)
        self._ignored = ignored
        logger.info(f"SLURM jobs fetched between {start_str} and {end_str}: {len(jobs)}")
        return jobs

    def ignored_jobs(self) -> list[IgnoredJob]:
        return list(self._ignored)
