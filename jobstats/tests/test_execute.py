"""Tests for external command execution helpers."""

import os

import pytest

from jobstats.exceptions import CollectorError, CommandError
from jobstats.sync.execute import execute, execute_as, execute_with_timeout


class TestExecute:
    """Tests for execute() and execute_with_timeout()."""

    def test_returns_output(self):
        assert execute("echo", ["hello"]) == "hello\n"

    def test_stderr_is_kept_out_of_output(self):
        output = execute("sh", ["-c", "echo err >&2; echo out"])
        assert output == "out\n"

    def test_stderr_attached_to_failure(self):
        with pytest.raises(CommandError) as exc_info:
            execute("sh", ["-c", "echo 'sudo: a password is required' >&2; exit 1"])
        assert exc_info.value.stderr.strip() == "sudo: a password is required"
        assert exc_info.value.output == ""

    def test_env_is_added_to_environment(self):
        output = execute("sh", ["-c", "echo $JOBSTATS_TEST_VAR:${PATH:+set}"], env={"JOBSTATS_TEST_VAR": "x"})
        assert output.strip() == "x:set"

    def test_non_zero_exit(self):
        with pytest.raises(CommandError) as exc_info:
            execute("sh", ["-c", "echo nope; exit 3"])
        assert "status 3" in str(exc_info.value)
        assert exc_info.value.output.strip() == "nope"

    def test_missing_binary(self):
        with pytest.raises(CollectorError):
            execute("/nonexistent/jobstats-sacct", [])

    def test_timeout(self):
        with pytest.raises(CommandError, match="timed out"):
            execute_with_timeout("sleep", ["5"], 0.2)

    @pytest.mark.skipif(not os.path.exists("/proc/self/stat"), reason="needs procfs")
    def test_runs_in_new_session(self):
        script = "read -r pid comm state ppid pgrp sid rest < /proc/$$/stat; echo $sid"
        sid = execute("sh", ["-c", script]).strip()
        assert sid and int(sid) != os.getsid(0)


class TestExecuteAs:
    """Tests for execute_as()."""

    def test_negative_ids_rejected(self):
        with pytest.raises(CommandError):
            execute_as("echo", ["hi"], -1, 0)

    @pytest.mark.skipif(os.geteuid() == 0, reason="root may switch to any user")
    def test_privilege_drop_without_capability_fails(self):
        with pytest.raises(CommandError):
            execute_as("echo", ["hi"], 0, 0)
