# fynflow/core/execution/dag.py
"""
Parallel topological execution of one run.

Every task gets its own asyncio task and a completion signal (a Future
resolved with the task's terminal status). All tasks start together; each
waits only on the signals of its own dependencies, so siblings whose
dependencies are met run side by side, bounded by the shared semaphore.

Failure is a soft stop: once a task fails, nothing new is dispatched.
Tasks with no dependencies count as dispatched at launch, even while they
wait for a semaphore slot, so they always run. Tasks already running finish
normally; a task that becomes ready after the failure ends up ``skipped``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Protocol

from fynflow.core.errors import FynflowRuntimeError, UnsupportedKindError
from fynflow.core.logging import get_logger
from fynflow.core.models.run import Run, TaskOutput, TaskRun, utcnow
from fynflow.core.models.workflow import Workflow
from fynflow.core.types.status import TaskRunStatus

logger = get_logger('dag')


class Executor(Protocol):
    async def execute(self, task: Any, params: Mapping[str, Any]) -> TaskOutput: ...


class DagExecution:
    """Executes one run's task graph and records TaskRun state on ``run``."""

    def __init__(
        self,
        run: Run,
        workflow: Workflow,
        executor: Executor,
        semaphore: asyncio.Semaphore,
    ) -> None:
        self.run = run
        self.workflow = workflow
        self.executor = executor
        self.semaphore = semaphore
        self.first_error: str | None = None
        self._dispatched: set[str] = set()
        self._signals: dict[str, asyncio.Future[TaskRunStatus]] = {}

        for task in workflow.tasks:
            run.task_runs.setdefault(task.task_id, TaskRun(task_id=task.task_id))

    @property
    def failed(self) -> bool:
        return self.first_error is not None

    async def execute(self) -> bool:
        """Run every task to a terminal state. Returns True if all succeeded."""
        loop = asyncio.get_running_loop()
        self._signals = {task.task_id: loop.create_future() for task in self.workflow.tasks}
        self._dispatched = {task.task_id for task in self.workflow.tasks if not task.depends_on}

        tasks = {task.task_id: task for task in self.workflow.tasks}
        await asyncio.gather(
            *(
                asyncio.create_task(
                    self._run_task(tasks[task_id]), name=f'{self.run.run_id}:{task_id}'
                )
                for task_id in self.workflow.topological_order()
            )
        )
        return not self.failed and all(
            tr.status == TaskRunStatus.SUCCESS for tr in self.run.task_runs.values()
        )

    async def _run_task(self, task: Any) -> None:
        task_run = self.run.task_runs[task.task_id]
        try:
            for dep in task.depends_on:
                dep_status = await self._signals[dep]
                if dep_status != TaskRunStatus.SUCCESS:
                    self._skip(task_run, f"upstream task '{dep}' {dep_status.value}")
                    return

            if self.failed and task.task_id not in self._dispatched:
                self._skip(task_run, 'run already failed')
                return
            self._dispatched.add(task.task_id)

            async with self.semaphore:
                await self._attempt(task, task_run)
        except asyncio.CancelledError:
            if not task_run.status.is_terminal:
                self._fail(task_run, 'cancelled')
            raise
        except Exception as exc:
            logger.error(
                f"Unexpected error running task '{task.task_id}' in run {self.run.run_id}: {exc}",
                exc_info=True,
            )
            self._fail(task_run, f'{type(exc).__name__}: {exc}')
        finally:
            signal = self._signals[task.task_id]
            if not signal.done():
                signal.set_result(task_run.status)

    async def _attempt(self, task: Any, task_run: TaskRun) -> None:
        """Run up to ``retries + 1`` attempts, ``retryDelayMs`` apart."""
        max_attempts = task.retries + 1
        retry_delay = self.workflow.retry_delay_ms / 1000
        task_run.status = TaskRunStatus.RUNNING
        task_run.start_time = utcnow()
        error = ''

        for attempt in range(1, max_attempts + 1):
            task_run.attempts = attempt
            try:
                output = await self.executor.execute(task, self.run.params)
            except UnsupportedKindError as exc:
                error = exc.message
                break
            except FynflowRuntimeError as exc:
                error = exc.message
            except Exception as exc:
                error = f'{type(exc).__name__}: {exc}'
            else:
                task_run.output = output
                task_run.status = TaskRunStatus.SUCCESS
                task_run.end_time = utcnow()
                logger.info(
                    f"Task '{task.task_id}' succeeded (run {self.run.run_id}, attempt {attempt})"
                )
                return

            if attempt < max_attempts:
                logger.warning(
                    f"Task '{task.task_id}' attempt {attempt}/{max_attempts} failed, "
                    f'retrying: {error}'
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)

        self._fail(task_run, error)

    def _fail(self, task_run: TaskRun, error: str) -> None:
        task_run.status = TaskRunStatus.FAILED
        task_run.error = error
        task_run.end_time = utcnow()
        if self.first_error is None:
            self.first_error = error
        logger.error(f"Task '{task_run.task_id}' failed (run {self.run.run_id}): {error}")

    def _skip(self, task_run: TaskRun, reason: str) -> None:
        task_run.status = TaskRunStatus.SKIPPED
        task_run.error = reason
        task_run.end_time = utcnow()
        logger.info(f"Task '{task_run.task_id}' skipped (run {self.run.run_id}): {reason}")
