# fynflow/core/execution/process_runner.py
"""Runs OS processes for script and process tasks under a timeout."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Mapping, Sequence

from fynflow.core.errors import ExecutionError, TaskTimeoutError
from fynflow.core.logging import get_logger
from fynflow.core.models.run import TaskOutput

logger = get_logger('executor')

# Grace period for reaping a killed process group.
_KILL_WAIT_SECONDS = 5.0


def _decode(data: bytes | None) -> str:
    return data.decode('utf-8', errors='replace') if data else ''


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process and everything it spawned."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.kill()


async def run_process(
    *,
    task_id: str,
    kind: str,
    timeout_ms: int,
    argv: Sequence[str] | None = None,
    shell_command: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> TaskOutput:
    """Run a command to completion, capturing stdout and stderr.

    Exactly one of ``argv`` (exec'd directly) or ``shell_command`` (run via
    ``/bin/sh -c``) must be given. The child runs in its own session so a
    timeout kills the whole process group.

    Raises:
        TaskTimeoutError: The process outlived ``timeout_ms`` and was killed.
        ExecutionError: The process could not start or exited non-zero.
    """
    if (argv is None) == (shell_command is None):
        raise ValueError('exactly one of argv or shell_command is required')

    started = time.monotonic()
    try:
        if shell_command is not None:
            proc = await asyncio.create_subprocess_shell(
                shell_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=dict(env) if env is not None else None,
                cwd=cwd,
                start_new_session=True,
            )
        else:
            assert argv is not None
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=dict(env) if env is not None else None,
                cwd=cwd,
                start_new_session=True,
            )
    except OSError as exc:
        raise ExecutionError(
            f"task '{task_id}' could not start: {exc}", task_id=task_id, cause=exc
        ) from exc

    try:
        stdout_b, stderr_b = await asyncio.wait_for(
            proc.communicate(), timeout=timeout_ms / 1000
        )
    except asyncio.TimeoutError:
        _kill_process_group(proc)
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Task '{task_id}' pid {proc.pid} did not exit after SIGKILL")
        raise TaskTimeoutError(task_id, timeout_ms) from None
    except asyncio.CancelledError:
        _kill_process_group(proc)
        raise

    stdout = _decode(stdout_b)
    stderr = _decode(stderr_b)
    exit_code = proc.returncode
    duration_ms = (time.monotonic() - started) * 1000

    if exit_code != 0:
        detail = stderr.strip() or stdout.strip()
        raise ExecutionError(
            f"task '{task_id}' exited with code {exit_code}"
            + (f': {detail}' if detail else ''),
            task_id=task_id,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    return TaskOutput(
        kind=kind,
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        duration_ms=duration_ms,
    )
