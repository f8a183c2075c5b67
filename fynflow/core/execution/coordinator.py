# fynflow/core/execution/coordinator.py
from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

from fynflow.core.defaults import DEFAULT_MAX_CONCURRENT_RUNS, DEFAULT_MAX_CONCURRENT_TASKS
from fynflow.core.errors import (
    CoordinatorClosedError,
    RunNotFoundError,
    WorkflowNotFoundError,
)
from fynflow.core.execution.dag import DagExecution, Executor
from fynflow.core.logging import get_logger
from fynflow.core.models.run import Run, TaskRun, new_run_id, utcnow
from fynflow.core.models.workflow import Workflow
from fynflow.core.types.status import RunStatus

logger = get_logger('coordinator')


class ExecutionCoordinator:
    """
    Owns every Run and drives each through its task graph.

    Responsibilities:
    1. Allocate runs and queue them (start_run never waits on tasks)
    2. Run up to ``max_concurrent_runs`` runs at once, one worker each
    3. Bound task execution across all runs with one shared semaphore
    4. Expose run state as snapshots

    Runs live in memory for the life of the process.
    """

    def __init__(
        self,
        workflows: Mapping[str, Workflow],
        executor: Executor,
        *,
        max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS,
        max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS,
    ) -> None:
        if max_concurrent_runs <= 0 or max_concurrent_tasks <= 0:
            raise ValueError('concurrency limits must be positive')
        self.workflows = workflows
        self.executor = executor
        self.max_concurrent_runs = max_concurrent_runs
        self.max_concurrent_tasks = max_concurrent_tasks

        self._runs: dict[str, Run] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._queue: Optional[asyncio.Queue[str]] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._workers: set[asyncio.Task[Any]] = set()
        self._started = False
        self._closed = False

    # --- lifecycle ---

    async def start(self) -> None:
        """Spawn the run workers. Idempotent."""
        if self._started:
            return
        if self._closed:
            raise CoordinatorClosedError()
        self._queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_concurrent_tasks)
        for index in range(self.max_concurrent_runs):
            self._spawn_background(self._run_worker(), name=f'run-worker-{index}')
        self._started = True
        logger.info(
            f'Coordinator started: max_concurrent_runs={self.max_concurrent_runs}, '
            f'max_concurrent_tasks={self.max_concurrent_tasks}'
        )

    async def close(self, *, cancel: bool = False) -> None:
        """Stop accepting runs and release the executor.

        By default queued and in-flight runs are drained first. With
        ``cancel=True`` they end ``cancelled`` instead; running tasks are
        interrupted and their processes killed.
        """
        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            if cancel:
                self._cancel_queued()
            else:
                await self._queue.join()
        for task in list(self._workers):
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        aclose = getattr(self.executor, 'aclose', None)
        if aclose is not None:
            await aclose()
        logger.info('Coordinator closed')

    def _cancel_queued(self) -> None:
        assert self._queue is not None
        while not self._queue.empty():
            run_id = self._queue.get_nowait()
            self._finish(self._runs[run_id], RunStatus.CANCELLED, 'cancelled before start')
            self._queue.task_done()

    @property
    def closed(self) -> bool:
        return self._closed

    def _spawn_background(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        """Create a tracked background task with automatic cleanup."""
        task = asyncio.create_task(coro, name=name)
        self._workers.add(task)

        def _on_done(t: asyncio.Task[Any]) -> None:
            self._workers.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f'Background task {t.get_name()!r} failed: {exc}')

        task.add_done_callback(_on_done)
        return task

    # --- runs ---

    async def start_run(
        self, workflow_id: str, params: Optional[Mapping[str, Any]] = None
    ) -> str:
        """Create a pending run, queue it and return its id.

        Raises:
            CoordinatorClosedError: After close().
        """
        if self._closed:
            raise CoordinatorClosedError()
        if not self._started:
            await self.start()
        assert self._queue is not None

        run = Run(
            run_id=new_run_id(),
            workflow_id=workflow_id,
            params=dict(params or {}),
        )
        self._runs[run.run_id] = run
        self._finished[run.run_id] = asyncio.Event()
        self._queue.put_nowait(run.run_id)
        logger.info(f"Queued run {run.run_id} for workflow '{workflow_id}'")
        return run.run_id

    async def _run_worker(self) -> None:
        assert self._queue is not None
        while True:
            run_id = await self._queue.get()
            try:
                await self._process_run(run_id)
            except Exception as exc:
                logger.error(f'Run {run_id} crashed: {exc}', exc_info=True)
            finally:
                self._queue.task_done()

    async def _process_run(self, run_id: str) -> None:
        run = self._runs[run_id]
        run.status = RunStatus.RUNNING
        try:
            workflow = self.workflows.get(run.workflow_id)
            if workflow is None:
                self._finish(run, RunStatus.FAILED, WorkflowNotFoundError(run.workflow_id).message)
                return

            assert self._semaphore is not None
            execution = DagExecution(run, workflow, self.executor, self._semaphore)
            logger.info(
                f"Run {run_id} started: workflow '{workflow.workflow_id}', "
                f'{len(workflow.tasks)} task(s)'
            )
            try:
                succeeded = await execution.execute()
            except Exception as exc:
                self._finish(run, RunStatus.FAILED, f'{type(exc).__name__}: {exc}')
                raise

            if succeeded:
                self._finish(run, RunStatus.SUCCESS, None)
            else:
                self._finish(
                    run, RunStatus.FAILED, execution.first_error or 'one or more tasks failed'
                )
        except asyncio.CancelledError:
            if not run.status.is_terminal:
                self._finish(run, RunStatus.CANCELLED, 'run cancelled')
            raise
        finally:
            if not run.status.is_terminal:
                self._finish(run, RunStatus.FAILED, 'run interrupted')

    def _finish(self, run: Run, status: RunStatus, error: Optional[str]) -> None:
        run.status = status
        run.error = error
        run.end_time = utcnow()
        self._finished[run.run_id].set()
        if status == RunStatus.SUCCESS:
            logger.info(f"Run {run.run_id} of '{run.workflow_id}' succeeded")
        else:
            logger.error(f"Run {run.run_id} of '{run.workflow_id}' {status.value}: {error}")

    # --- queries (snapshots only) ---

    def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.snapshot() if run is not None else None

    def get_all_runs(self) -> list[Run]:
        return [run.snapshot() for run in self._runs.values()]

    def get_task_runs(self, run_id: str) -> list[TaskRun]:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return [task_run.snapshot() for task_run in run.task_runs.values()]

    def active_run_count(self, workflow_id: str) -> int:
        """Number of non-terminal runs of ``workflow_id``."""
        return sum(
            1
            for run in self._runs.values()
            if run.workflow_id == workflow_id and not run.status.is_terminal
        )

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Wait until a run is terminal and return its snapshot.

        Raises:
            RunNotFoundError: Unknown run id.
            TimeoutError: The run did not finish within ``timeout`` seconds.
        """
        finished = self._finished.get(run_id)
        if finished is None:
            raise RunNotFoundError(run_id)
        await asyncio.wait_for(finished.wait(), timeout=timeout)
        return self._runs[run_id].snapshot()
