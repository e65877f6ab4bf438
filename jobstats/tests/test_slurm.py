"""Tests for the SLURM collector: sacct parsing, privilege resolution, invocation."""

import logging
from datetime import datetime
from types import SimpleNamespace
from unittest import mock

import pytest

from jobstats.database.models import IgnoredJob
from jobstats.exceptions import CollectorError, CommandError, IdentityError
from jobstats.identity import uuid_from_strings
from jobstats.sync.slurm import (
    SACCT_ENV,
    SACCT_FIELDS,
    SUDO_TIMEOUT,
    ExecMode,
    SlurmCollector,
    parse_sacct_line,
    parse_sacct_output,
)


@pytest.fixture
def sacct_path(tmp_path):
    """A file standing in for the sacct executable."""
    path = tmp_path / "sacct"
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return str(path)


def _line(**overrides):
    values = {
        "jobidraw": "42", "cluster": "hpc", "partition": "cpu", "qos": "normal",
        "account": "acc", "group": "grp", "gid": "100", "user": "alice", "uid": "100",
        "submit": "2024-01-01T00:00:00+0000", "start": "2024-01-01T00:01:00+0000",
        "end": "2024-01-01T01:01:00+0000", "elapsed": "01:00:00", "elapsedraw": "3600",
        "exitcode": "0:0", "state": "COMPLETED", "allocnodes": "1", "alloccpus": "4",
        "nodelist": "node1", "jobname": "job", "workdir": "/tmp",
    }
    values.update(overrides)
    return "|".join(values[name] for name in SACCT_FIELDS)


class TestParseSacctOutput:
    """Tests for parsing a full sacct fixture."""

    def test_only_valid_jobs_are_accepted(self, sacct_output):
        jobs = parse_sacct_output(sacct_output)
        assert [job.jobid for job in jobs] == ["1479763", "1481508"]

    def test_fields_are_mapped(self, sacct_output):
        job = parse_sacct_output(sacct_output)[0]
        assert job.cluster == "hpc"
        assert job.account == "ACC1"
        assert job.usr == "usr1"
        assert job.grp == "grp1"
        assert job.elapsedraw == 3600
        assert job.nnodes == "2"
        assert job.ncpus == "16"
        assert job.nodelist == "compute-[0-1]"
        assert job.nodelistexp == "compute-0|compute-1"
        assert job.submit == "2024-02-13T10:00:00+0100"
        assert job.workdir == "/home/usr1"

    def test_uuid_uses_lowercased_account_and_expanded_nodes(self, sacct_output):
        job = parse_sacct_output(sacct_output)[0]
        assert job.uuid == uuid_from_strings(["1479763", "1000", "acc1", "compute-0|compute-1"])

    def test_identifiers_are_stable_across_runs(self, sacct_output):
        first = [job.uuid for job in parse_sacct_output(sacct_output)]
        second = [job.uuid for job in parse_sacct_output(sacct_output)]
        assert first == second

    def test_empty_output(self):
        assert parse_sacct_output("") == []
        assert parse_sacct_output("JobIDRaw|Cluster\n") == []

    def test_leading_diagnostic_line(self, sacct_output):
        """A stray line ahead of the header does not turn the header into a job."""
        output = "sudo: unable to resolve host login01: Name or service not known\n" + sacct_output
        jobs = parse_sacct_output(output)
        assert [job.jobid for job in jobs] == ["1479763", "1481508"]

    def test_header_is_never_a_job(self, sacct_output):
        header = sacct_output.splitlines()[0]
        assert parse_sacct_line(header, cutoff=0) is None

    def test_short_jobs_are_reported(self, sacct_output):
        ignored = []
        parse_sacct_output(sacct_output, ignored=ignored)
        assert ignored == [IgnoredJob("1480002", "usr1", "acc1")]

    def test_custom_cutoff(self, sacct_output):
        """With no cutoff the 30 second job is kept too."""
        jobs = parse_sacct_output(sacct_output, cutoff=0)
        assert "1480002" in [job.jobid for job in jobs]


class TestParseSacctLine:
    """Tests for the per-line skip rules."""

    def test_valid_line(self):
        job = parse_sacct_line(_line())
        assert job is not None
        assert job.jobid == "42"
        assert job.nodelistexp == "node1"

    def test_too_few_columns(self):
        assert parse_sacct_line("42|hpc|cpu") is None

    def test_job_step(self):
        assert parse_sacct_line(_line(jobidraw="42.extern")) is None

    def test_none_assigned(self):
        assert parse_sacct_line(_line(nodelist="None assigned")) is None

    def test_below_cutoff(self):
        assert parse_sacct_line(_line(elapsedraw="59"), cutoff=60) is None
        assert parse_sacct_line(_line(elapsedraw="60"), cutoff=60) is not None

    def test_identity_failure_falls_back_to_jobid(self, caplog):
        with mock.patch("jobstats.sync.slurm.uuid_from_strings", side_effect=IdentityError("boom")):
            with caplog.at_level(logging.WARNING, logger="jobstats.sync.slurm"):
                job = parse_sacct_line(_line())
        assert job.uuid == "42"
        assert "Using raw job id 42" in caplog.text


class TestExecModeResolution:
    """Tests for the native -> capability -> sudo -> degraded fallback chain."""

    def test_missing_sacct_raises(self, tmp_path):
        with pytest.raises(CollectorError):
            SlurmCollector(sacct_path=str(tmp_path / "nope"), exec_mode=ExecMode.NATIVE)

    def test_sacct_searched_on_path(self):
        with mock.patch("jobstats.sync.slurm.shutil.which", return_value="/usr/bin/sacct"):
            collector = SlurmCollector(exec_mode=ExecMode.NATIVE)
        assert collector.sacct_path == "/usr/bin/sacct"

    def test_root_is_native(self, sacct_path):
        with mock.patch("jobstats.sync.slurm.os.geteuid", return_value=0):
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.NATIVE

    def test_slurm_user_is_native(self, sacct_path):
        with mock.patch("jobstats.sync.slurm.os.geteuid", return_value=450), \
                mock.patch("jobstats.sync.slurm.pwd.getpwuid", return_value=SimpleNamespace(pw_name="slurm")):
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.NATIVE

    def test_capability(self, sacct_path):
        entry = SimpleNamespace(pw_uid=450, pw_gid=451)
        with mock.patch.object(SlurmCollector, "_native_allowed", return_value=False), \
                mock.patch("jobstats.sync.slurm.pwd.getpwnam", return_value=entry), \
                mock.patch("jobstats.sync.slurm.execute_as", return_value="usage") as execute_as:
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.CAPABILITY
        execute_as.assert_called_once_with(sacct_path, ["--help"], 450, 451)

    def test_sudo_when_capability_fails(self, sacct_path):
        with mock.patch.object(SlurmCollector, "_native_allowed", return_value=False), \
                mock.patch("jobstats.sync.slurm.pwd.getpwnam", side_effect=KeyError("slurm")), \
                mock.patch("jobstats.sync.slurm.execute_with_timeout", return_value="usage") as run:
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.SUDO
        run.assert_called_once_with("sudo", [sacct_path, "--help"], SUDO_TIMEOUT)

    def test_sudo_when_privilege_drop_fails(self, sacct_path):
        entry = SimpleNamespace(pw_uid=450, pw_gid=451)
        with mock.patch.object(SlurmCollector, "_native_allowed", return_value=False), \
                mock.patch("jobstats.sync.slurm.pwd.getpwnam", return_value=entry), \
                mock.patch("jobstats.sync.slurm.execute_as", side_effect=CommandError("sacct", "EPERM")), \
                mock.patch("jobstats.sync.slurm.execute_with_timeout", return_value=""):
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.SUDO

    def test_degraded_is_not_fatal(self, sacct_path, caplog):
        with mock.patch.object(SlurmCollector, "_native_allowed", return_value=False), \
                mock.patch.object(SlurmCollector, "_capability_allowed", return_value=False), \
                mock.patch.object(SlurmCollector, "_sudo_allowed", return_value=False), \
                caplog.at_level(logging.WARNING, logger="jobstats.sync.slurm"):
            collector = SlurmCollector(sacct_path=sacct_path)
        assert collector.exec_mode is ExecMode.DEGRADED
        assert "only jobs of the current user" in caplog.text


class TestGetJobs:
    """Tests for sacct invocation through the resolved mode."""

    START = datetime(2024, 2, 13, 0, 0, 0)
    END = datetime(2024, 2, 13, 12, 0, 0)

    def test_native_invocation(self, sacct_path, sacct_output):
        collector = SlurmCollector(sacct_path=sacct_path, exec_mode=ExecMode.NATIVE)
        with mock.patch("jobstats.sync.slurm.execute", return_value=sacct_output) as execute:
            jobs = collector.get_jobs(self.START, self.END)

        assert len(jobs) == 2
        cmd, args = execute.call_args.args
        assert cmd == sacct_path
        assert execute.call_args.kwargs["env"] == SACCT_ENV
        assert args[:4] == ["-D", "-X", "--allusers", "--parsable2"]
        assert args[args.index("--starttime") + 1] == "2024-02-13T00:00:00"
        assert args[args.index("--endtime") + 1] == "2024-02-13T12:00:00"
        assert args[args.index("--state") + 1] == "CANCELLED,COMPLETED,FAILED,NODE_FAIL,PREEMPTED,TIMEOUT"
        assert args[args.index("--format") + 1] == ",".join(SACCT_FIELDS)

    def test_sudo_invocation(self, sacct_path, sacct_output):
        collector = SlurmCollector(sacct_path=sacct_path, exec_mode=ExecMode.SUDO)
        with mock.patch("jobstats.sync.slurm.execute", return_value=sacct_output) as execute:
            collector.get_jobs(self.START, self.END)
        cmd, args = execute.call_args.args
        assert cmd == "sudo"
        assert args[0] == sacct_path

    def test_capability_invocation(self, sacct_path, sacct_output):
        entry = SimpleNamespace(pw_uid=450, pw_gid=451)
        collector = SlurmCollector(sacct_path=sacct_path, exec_mode=ExecMode.CAPABILITY)
        with mock.patch("jobstats.sync.slurm.pwd.getpwnam", return_value=entry), \
                mock.patch("jobstats.sync.slurm.execute_as", return_value=sacct_output) as execute_as:
            jobs = collector.get_jobs(self.START, self.END)
        assert len(jobs) == 2
        assert execute_as.call_args.args[2:4] == (450, 451)

    def test_command_failure_propagates(self, sacct_path):
        collector = SlurmCollector(sacct_path=sacct_path, exec_mode=ExecMode.NATIVE)
        with mock.patch("jobstats.sync.slurm.execute", side_effect=CommandError(sacct_path, "exited with status 1")):
            with pytest.raises(CollectorError):
                collector.get_jobs(self.START, self.END)

    def test_ignored_jobs_of_last_window(self, sacct_path, sacct_output):
        collector = SlurmCollector(sacct_path=sacct_path, exec_mode=ExecMode.NATIVE)
        assert collector.ignored_jobs() == []
        with mock.patch("jobstats.sync.slurm.execute", return_value=sacct_output):
            collector.get_jobs(self.START, self.END)
        assert [job.jobid for job in collector.ignored_jobs()] == ["1480002"]

        with mock.patch("jobstats.sync.slurm.execute", return_value=sacct_output.splitlines()[0] + "\n"):
            collector.get_jobs(self.START, self.END)
        assert collector.ignored_jobs() == []
