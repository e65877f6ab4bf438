"""Run external commands, optionally as another user or with a deadline.

Children are started in a new session: they have no controlling terminal, so
``sudo`` cannot block on an interactive password prompt, and an interrupt
sent to the collector's process group does not kill an in-flight command.
"""

import logging
import os
import subprocess

from ..exceptions import CommandError

logger = logging.getLogger(__name__)


def _environment(env: dict | None) -> dict | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def _run(cmd: str, args: list[str], env: dict | None, timeout: float | None, **kwargs) -> str:
    argv = [cmd, *args]
    logger.debug(f"Executing {' '.join(argv)}")
    try:
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            env=_environment(env),
            timeout=timeout,
            start_new_session=True,
            check=False,
            text=True,
            errors="replace",
            **kwargs,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, f"timed out after {timeout}s") from e
    except OSError as e:
        # Missing binary, permission denied, failed setuid/setgid
        raise CommandError(cmd, str(e)) from e

    if result.stderr:
        logger.debug(f"{cmd} stderr: {result.stderr.strip()}")
    if result.returncode != 0:
        raise CommandError(
            cmd, f"exited with status {result.returncode}", output=result.stdout, stderr=result.stderr
        )
    return result.stdout


def execute(cmd: str, args: list[str], env: dict | None = None, timeout: float | None = None) -> str:
    """Run ``cmd args...`` and return its stdout.

    stderr never mixes into the returned output; it is logged at debug level
    and attached to the CommandError on failure.

    Raises:
        CommandError: On non-zero exit, timeout, or if the command cannot start
    """
    return _run(cmd, args, env, timeout)


def execute_as(
    cmd: str,
    args: list[str],
    uid: int,
    gid: int,
    env: dict | None = None,
    timeout: float | None = None,
) -> str:
    """Run a command with its real and effective ids switched to ``uid``/``gid``.

    Requires the calling process to hold CAP_SETUID/CAP_SETGID (or be root).

    Raises:
        CommandError: If the id switch or the command itself fails
    """
    if uid < 0 or gid < 0:
        raise CommandError(cmd, f"invalid uid/gid {uid}/{gid}")
    return _run(cmd, args, env, timeout, user=uid, group=gid, extra_groups=[])


def execute_with_timeout(cmd: str, args: list[str], timeout: float, env: dict | None = None) -> str:
    """Run a command that must finish within ``timeout`` seconds."""
    return _run(cmd, args, env, timeout)
