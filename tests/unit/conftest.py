"""Unit test helpers: executor double and workflow builder."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping

from fynflow.core.models.run import TaskOutput
from fynflow.core.models.workflow import Workflow

Behaviour = Callable[[Any, Mapping[str, Any]], Awaitable[TaskOutput]]


def make_workflow(workflow_id: str, *tasks: tuple[str, list[str]], **fields: Any) -> Workflow:
    """Build a workflow of process tasks from ``(task_id, depends_on)`` pairs."""
    return Workflow.model_validate(
        {
            'workflowId': workflow_id,
            'tasks': [
                {'taskId': task_id, 'kind': 'process', 'command': 'true', 'dependsOn': deps}
                for task_id, deps in tasks
            ],
            **fields,
        }
    )


class FakeExecutor:
    """Executor double: per-task behaviours, call log and concurrency tracking."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.behaviours: dict[str, Behaviour] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.completed: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    def on(self, task_id: str, behaviour: Behaviour) -> None:
        self.behaviours[task_id] = behaviour

    def fail(self, task_id: str, exc: BaseException, times: int | None = None) -> None:
        """Raise ``exc`` for ``task_id``; after ``times`` failures, succeed."""
        remaining = [times]

        async def _behaviour(task: Any, params: Mapping[str, Any]) -> TaskOutput:
            if remaining[0] is None or remaining[0] > 0:
                if remaining[0] is not None:
                    remaining[0] -= 1
                raise exc
            return TaskOutput(kind=task.kind, stdout='recovered')

        self.on(task_id, _behaviour)

    def block(self, task_id: str) -> asyncio.Event:
        """Hold ``task_id`` until the returned event is set."""
        gate = asyncio.Event()

        async def _behaviour(task: Any, params: Mapping[str, Any]) -> TaskOutput:
            await gate.wait()
            return TaskOutput(kind=task.kind, stdout=task.task_id)

        self.on(task_id, _behaviour)
        return gate

    async def execute(self, task: Any, params: Mapping[str, Any]) -> TaskOutput:
        self.calls.append((task.task_id, dict(params)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            behaviour = self.behaviours.get(task.task_id)
            if behaviour is not None:
                return await behaviour(task, params)
            return TaskOutput(kind=task.kind, stdout=task.task_id, exit_code=0)
        finally:
            self.active -= 1
            self.completed.append(task.task_id)

    @property
    def called(self) -> list[str]:
        return [task_id for task_id, _ in self.calls]

    async def aclose(self) -> None:
        self.closed = True
