# fynflow/core/types/status.py
"""
Run and task-run status enums.
This module should not import from other application modules.
"""

from enum import Enum


class RunStatus(str, Enum):
    """
    Status of one workflow run.

    State machine:
        PENDING → RUNNING → SUCCESS
                          → FAILED (a task failed, or the workflow vanished)
        CANCELLED is reserved; no entry point produces it yet.
    """

    PENDING = 'pending'  # Created and queued, not yet picked up by a run worker.

    RUNNING = 'running'  # Tasks are being dispatched.

    SUCCESS = 'success'  # Every task succeeded.

    FAILED = 'failed'  # At least one task failed; error holds the first one.
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in RUN_TERMINAL_STATES


RUN_TERMINAL_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.SUCCESS,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})


class TaskRunStatus(str, Enum):
    """
    Status of a single task within one run.

    State machine:
        PENDING → RUNNING → SUCCESS
                          → FAILED
                → SKIPPED (upstream did not succeed, or the run already failed)
    """

    PENDING = 'pending'
    """Waiting for dependencies to become terminal"""

    RUNNING = 'running'
    """Dispatched to the executor"""

    SUCCESS = 'success'
    FAILED = 'failed'

    SKIPPED = 'skipped'
    """Never started"""

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in TASK_RUN_TERMINAL_STATES


TASK_RUN_TERMINAL_STATES: frozenset[TaskRunStatus] = frozenset({
    TaskRunStatus.SUCCESS,
    TaskRunStatus.FAILED,
    TaskRunStatus.SKIPPED,
})
