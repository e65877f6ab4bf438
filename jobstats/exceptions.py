"""Exception hierarchy for the jobstats collector."""


class JobStatsError(Exception):
    """Base class for all jobstats errors."""


class ConfigurationError(JobStatsError):
    """Invalid or inconsistent configuration detected at startup."""


class CollectorError(JobStatsError):
    """A batch scheduler collector could not retrieve jobs."""


class CommandError(CollectorError):
    """An external command failed, timed out or could not be started."""

    def __init__(self, cmd, message, output="", stderr=""):
        self.cmd = cmd
        self.output = output
        self.stderr = stderr
        super().__init__(f"{cmd}: {message}")


class IdentityError(JobStatsError):
    """A stable job identifier could not be derived."""


class StoreError(JobStatsError):
    """The job store could not complete an operation."""


class TSDBError(JobStatsError):
    """The metrics backend returned an error or an unusable response."""
