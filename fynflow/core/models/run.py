# fynflow/core/models/run.py
"""
Run and TaskRun records.

These are owned and mutated by the execution coordinator. Everything handed
to callers is a snapshot produced by ``snapshot()``, so readers never see a
record change under them.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from fynflow.core.types.status import RunStatus, TaskRunStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class TaskOutput:
    """What a task produced. Process fields and http fields are kind-specific."""

    kind: str
    stdout: str = ''
    stderr: str = ''
    exit_code: int | None = None
    status_code: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'kind': self.kind, 'durationMs': self.duration_ms}
        if self.kind == 'http':
            data.update(
                statusCode=self.status_code, headers=dict(self.headers), body=self.body
            )
        else:
            data.update(stdout=self.stdout, stderr=self.stderr, exitCode=self.exit_code)
        return data


@dataclass
class TaskRun:
    """State of one task inside one run."""

    task_id: str
    status: TaskRunStatus = TaskRunStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    attempts: int = 0
    error: str | None = None
    output: TaskOutput | None = None

    def snapshot(self) -> TaskRun:
        # TaskOutput is frozen, so a shallow copy is enough
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            'taskId': self.task_id,
            'status': self.status.value,
            'startTime': _isoformat(self.start_time),
            'endTime': _isoformat(self.end_time),
            'attempts': self.attempts,
            'error': self.error,
            'output': self.output.to_dict() if self.output else None,
        }


@dataclass
class Run:
    """One execution of a workflow."""

    run_id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    error: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    task_runs: dict[str, TaskRun] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def snapshot(self) -> Run:
        return replace(
            self,
            params=copy.deepcopy(self.params),
            task_runs={tid: tr.snapshot() for tid, tr in self.task_runs.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'runId': self.run_id,
            'workflowId': self.workflow_id,
            'status': self.status.value,
            'startTime': _isoformat(self.start_time),
            'endTime': _isoformat(self.end_time),
            'error': self.error,
            'params': self.params,
            'taskRuns': [tr.to_dict() for tr in self.task_runs.values()],
        }
