"""Unit tests for DagExecution (dependency order, soft stop, retries)."""

from __future__ import annotations

import asyncio
import time

import pytest

from fynflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ExecutionError,
    UnsupportedKindError,
)
from fynflow.core.execution.dag import DagExecution
from fynflow.core.models.run import Run, new_run_id
from fynflow.core.models.workflow import Workflow
from fynflow.core.types.status import TaskRunStatus

from .conftest import FakeExecutor, make_workflow

pytestmark = pytest.mark.unit


def _run_for(workflow: Workflow) -> Run:
    return Run(run_id=new_run_id(), workflow_id=workflow.workflow_id, params={'k': 'v'})


async def _execute(
    workflow: Workflow, executor: FakeExecutor, slots: int = 5
) -> tuple[bool, Run, DagExecution]:
    run = _run_for(workflow)
    execution = DagExecution(run, workflow, executor, asyncio.Semaphore(slots))
    succeeded = await execution.execute()
    return succeeded, run, execution


def _statuses(run: Run) -> dict[str, TaskRunStatus]:
    return {task_id: tr.status for task_id, tr in run.task_runs.items()}


# =============================================================================
# Ordering and parallelism
# =============================================================================


class TestOrdering:
    """Tests for dependency ordering."""

    def test_task_runs_created_pending(self) -> None:
        workflow = make_workflow('w', ('a', []), ('b', ['a']))
        run = _run_for(workflow)
        DagExecution(run, workflow, FakeExecutor(), asyncio.Semaphore(1))
        assert _statuses(run) == {'a': TaskRunStatus.PENDING, 'b': TaskRunStatus.PENDING}

    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self) -> None:
        workflow = make_workflow('w', ('c', ['b']), ('b', ['a']), ('a', []))
        executor = FakeExecutor()

        succeeded, run, _ = await _execute(workflow, executor)

        assert succeeded is True
        assert executor.called == ['a', 'b', 'c']
        assert set(_statuses(run).values()) == {TaskRunStatus.SUCCESS}
        for task_run in run.task_runs.values():
            assert task_run.attempts == 1
            assert task_run.output is not None
            assert task_run.start_time is not None and task_run.end_time is not None

    @pytest.mark.asyncio
    async def test_run_params_passed(self) -> None:
        executor = FakeExecutor()
        await _execute(make_workflow('w', ('a', [])), executor)
        assert executor.calls == [('a', {'k': 'v'})]

    @pytest.mark.asyncio
    async def test_siblings_run_concurrently(self) -> None:
        workflow = make_workflow('w', ('a', []), ('b', ['a']), ('c', ['a']), ('d', ['b', 'c']))
        executor = FakeExecutor(delay=0.05)

        succeeded, _, _ = await _execute(workflow, executor)

        assert succeeded is True
        assert executor.max_active == 2
        assert executor.called[0] == 'a'
        assert executor.called[-1] == 'd'

    @pytest.mark.asyncio
    async def test_semaphore_bounds_concurrency(self) -> None:
        workflow = make_workflow('w', *[(f't{i}', []) for i in range(6)])
        executor = FakeExecutor(delay=0.03)

        succeeded, _, _ = await _execute(workflow, executor, slots=2)

        assert succeeded is True
        assert executor.max_active == 2
        assert len(executor.calls) == 6


# =============================================================================
# Failure handling
# =============================================================================


class TestFailure:
    """Tests for skip cascade and soft stop."""

    @pytest.mark.asyncio
    async def test_downstream_skipped(self) -> None:
        workflow = make_workflow('w', ('a', []), ('b', ['a']), ('c', ['b']))
        executor = FakeExecutor()
        executor.fail('a', ExecutionError("task 'a' exited with code 1"))

        succeeded, run, execution = await _execute(workflow, executor)

        assert succeeded is False
        assert _statuses(run) == {
            'a': TaskRunStatus.FAILED,
            'b': TaskRunStatus.SKIPPED,
            'c': TaskRunStatus.SKIPPED,
        }
        assert run.task_runs['a'].error == "task 'a' exited with code 1"
        assert run.task_runs['b'].error == "upstream task 'a' failed"
        assert run.task_runs['c'].error == "upstream task 'b' skipped"
        assert execution.first_error == "task 'a' exited with code 1"
        assert executor.called == ['a']

    @pytest.mark.asyncio
    async def test_in_flight_finishes_then_nothing_new_starts(self) -> None:
        workflow = make_workflow('w', ('fail', []), ('slow', []), ('after_slow', ['slow']))
        executor = FakeExecutor()
        executor.fail('fail', ExecutionError('boom'))
        gate = executor.block('slow')

        task = asyncio.create_task(_execute(workflow, executor))
        while 'fail' not in executor.completed:
            await asyncio.sleep(0.01)
        gate.set()
        succeeded, run, _ = await task

        assert succeeded is False
        assert _statuses(run) == {
            'fail': TaskRunStatus.FAILED,
            'slow': TaskRunStatus.SUCCESS,
            'after_slow': TaskRunStatus.SKIPPED,
        }
        assert run.task_runs['after_slow'].error == 'run already failed'
        assert 'after_slow' not in executor.called

    @pytest.mark.asyncio
    async def test_root_runs_when_sibling_fails_first(self) -> None:
        workflow = make_workflow('w', ('fail', []), ('other', []))
        executor = FakeExecutor()
        executor.fail('fail', ExecutionError('boom'))

        succeeded, run, _ = await _execute(workflow, executor)

        assert succeeded is False
        assert _statuses(run) == {
            'fail': TaskRunStatus.FAILED,
            'other': TaskRunStatus.SUCCESS,
        }
        assert executor.called == ['fail', 'other']

    @pytest.mark.asyncio
    async def test_root_waiting_for_slot_still_runs(self) -> None:
        workflow = make_workflow('w', ('first', []), ('second', []), ('third', ['second']))
        executor = FakeExecutor()
        executor.fail('first', ExecutionError('boom'))

        succeeded, run, _ = await _execute(workflow, executor, slots=1)

        assert succeeded is False
        assert _statuses(run) == {
            'first': TaskRunStatus.FAILED,
            'second': TaskRunStatus.SUCCESS,
            'third': TaskRunStatus.SKIPPED,
        }
        assert run.task_runs['third'].error == 'run already failed'
        assert executor.called == ['first', 'second']

    @pytest.mark.asyncio
    async def test_unexpected_exception_message(self) -> None:
        executor = FakeExecutor()
        executor.fail('a', RuntimeError('kaboom'))

        _, run, _ = await _execute(make_workflow('w', ('a', [])), executor)

        assert run.task_runs['a'].error == 'RuntimeError: kaboom'


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    """Tests for per-task retries."""

    def _workflow(self, retries: int) -> Workflow:
        return Workflow.model_validate(
            {
                'workflowId': 'w',
                'tasks': [{'taskId': 'a', 'kind': 'process', 'command': 'true', 'retries': retries}],
            }
        )

    @pytest.mark.asyncio
    async def test_recovers_within_retries(self) -> None:
        executor = FakeExecutor()
        executor.fail('a', ExecutionError('flaky'), times=2)

        succeeded, run, _ = await _execute(self._workflow(2), executor)

        assert succeeded is True
        assert run.task_runs['a'].attempts == 3
        assert run.task_runs['a'].output is not None
        assert run.task_runs['a'].output.stdout == 'recovered'

    @pytest.mark.asyncio
    async def test_exhausts_retries(self) -> None:
        executor = FakeExecutor()
        executor.fail('a', ExecutionError('still broken'))

        succeeded, run, _ = await _execute(self._workflow(2), executor)

        assert succeeded is False
        assert run.task_runs['a'].attempts == 3
        assert run.task_runs['a'].error == 'still broken'
        assert len(executor.calls) == 3

    @pytest.mark.asyncio
    async def test_unsupported_kind_not_retried(self) -> None:
        executor = FakeExecutor()
        executor.fail(
            'a',
            UnsupportedKindError(
                message="unsupported task kind 'ftp'", code=ErrorCode.CONFIG_UNSUPPORTED_KIND
            ),
        )

        succeeded, run, _ = await _execute(self._workflow(5), executor)

        assert succeeded is False
        assert run.task_runs['a'].attempts == 1
        assert run.task_runs['a'].error == "unsupported task kind 'ftp'"
        assert issubclass(UnsupportedKindError, ConfigurationError)

    @pytest.mark.asyncio
    async def test_retry_delay_between_attempts(self) -> None:
        workflow = Workflow.model_validate(
            {
                'workflowId': 'w',
                'retryDelayMs': 100,
                'tasks': [{'taskId': 'a', 'kind': 'process', 'command': 'true', 'retries': 1}],
            }
        )
        executor = FakeExecutor()
        executor.fail('a', ExecutionError('flaky'), times=1)

        started = time.monotonic()
        succeeded, run, _ = await _execute(workflow, executor)
        elapsed = time.monotonic() - started

        assert succeeded is True
        assert run.task_runs['a'].attempts == 2
        assert elapsed >= 0.09

    @pytest.mark.asyncio
    async def test_workflow_retries_apply_to_tasks(self) -> None:
        workflow = Workflow.model_validate(
            {
                'workflowId': 'w',
                'retries': 2,
                'tasks': [{'taskId': 'a', 'kind': 'process', 'command': 'true'}],
            }
        )
        executor = FakeExecutor()
        executor.fail('a', ExecutionError('flaky'), times=2)

        succeeded, run, _ = await _execute(workflow, executor)

        assert succeeded is True
        assert run.task_runs['a'].attempts == 3
