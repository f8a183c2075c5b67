"""Unit tests for Scheduler (triggers, timers, catch-up)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fynflow.core.errors import ConstraintViolation, WorkflowNotFoundError
from fynflow.core.execution.coordinator import ExecutionCoordinator
from fynflow.core.models.workflow import Workflow
from fynflow.core.registry.workflows import WorkflowRegistry
from fynflow.core.scheduler.service import Scheduler

pytestmark = pytest.mark.unit


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def _workflow(workflow_id: str, **fields: Any) -> Workflow:
    return Workflow.model_validate(
        {
            'workflowId': workflow_id,
            'tasks': [{'taskId': 'a', 'kind': 'process', 'command': 'true'}],
            **fields,
        }
    )


def _coordinator(active: int = 0) -> MagicMock:
    coordinator = MagicMock(spec=ExecutionCoordinator)
    coordinator.start_run = AsyncMock(side_effect=lambda wid, params=None: f'run-{wid}')
    coordinator.active_run_count.return_value = active
    return coordinator


class FakeClock:
    """Settable clock; advanced by FakeSleeper."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeSleeper:
    """Advances the clock instead of sleeping.

    Each entry in ``lateness`` is extra time added on top of one requested
    delay. Once the entries run out the sleeper parks forever and sets
    ``idle`` so tests can wait for the timer loop to settle.
    """

    def __init__(self, clock: FakeClock, lateness: list[timedelta]) -> None:
        self.clock = clock
        self.lateness = list(lateness)
        self.delays: list[float] = []
        self.idle = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if not self.lateness:
            self.idle.set()
            await asyncio.Event().wait()
        self.clock.now += timedelta(seconds=delay) + self.lateness.pop(0)
        await asyncio.sleep(0)


# =============================================================================
# trigger()
# =============================================================================


@pytest.mark.unit
class TestTrigger:
    """Tests for Scheduler.trigger."""

    @pytest.mark.asyncio
    async def test_unknown_workflow(self) -> None:
        scheduler = Scheduler(WorkflowRegistry(), _coordinator())
        with pytest.raises(WorkflowNotFoundError):
            await scheduler.trigger('ghost')

    @pytest.mark.asyncio
    async def test_params_layered_over_defaults(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', params={'region': 'eu', 'limit': 10})
        coordinator = _coordinator()
        scheduler = Scheduler(registry, coordinator)

        run_id = await scheduler.trigger('w', {'limit': 5, 'extra': True})

        assert run_id == 'run-w'
        coordinator.start_run.assert_awaited_once_with(
            'w', {'region': 'eu', 'limit': 5, 'extra': True}
        )

    @pytest.mark.asyncio
    async def test_before_start_date(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', startDate='2024-06-01T00:00:00Z')
        coordinator = _coordinator()
        scheduler = Scheduler(registry, coordinator, clock=FakeClock(_utc(2024, 5, 1)))

        with pytest.raises(ConstraintViolation) as exc_info:
            await scheduler.trigger('w')

        assert exc_info.value.reason.startswith('before startDate')
        coordinator.start_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_after_end_date(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', endDate='2024-06-01T00:00:00Z')
        scheduler = Scheduler(registry, _coordinator(), clock=FakeClock(_utc(2024, 7, 1)))

        with pytest.raises(ConstraintViolation) as exc_info:
            await scheduler.trigger('w')
        assert exc_info.value.reason.startswith('after endDate')

    @pytest.mark.asyncio
    async def test_max_active_runs_reached(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', maxActiveRuns=2)
        coordinator = _coordinator(active=2)
        scheduler = Scheduler(registry, coordinator)

        with pytest.raises(ConstraintViolation) as exc_info:
            await scheduler.trigger('w')

        assert 'maxActiveRuns=2' in exc_info.value.reason
        coordinator.active_run_count.assert_called_once_with('w')
        coordinator.start_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_max_active_runs_below_limit(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', maxActiveRuns=2)
        coordinator = _coordinator(active=1)
        scheduler = Scheduler(registry, coordinator)

        assert await scheduler.trigger('w') == 'run-w'

    @pytest.mark.asyncio
    async def test_naive_clock_treated_as_utc(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', startDate='2024-06-01T00:00:00Z')
        scheduler = Scheduler(
            registry, _coordinator(), clock=lambda: datetime(2024, 7, 1)
        )
        assert await scheduler.trigger('w') == 'run-w'


# =============================================================================
# Timers
# =============================================================================


@pytest.mark.unit
class TestScheduling:
    """Tests for schedule bookkeeping."""

    @pytest.mark.asyncio
    async def test_schedule_and_unschedule(self) -> None:
        registry = WorkflowRegistry()
        registry['hourly'] = _workflow('hourly', schedule='0 * * * *')
        registry['manual'] = _workflow('manual')
        clock = FakeClock(_utc(2024, 1, 1, 10, 30))
        sleeper = FakeSleeper(clock, [])
        scheduler = Scheduler(registry, _coordinator(), clock=clock, sleep=sleeper)

        assert scheduler.schedule(registry['manual']) is False
        assert scheduler.schedule(registry['hourly']) is True
        assert scheduler.is_scheduled('hourly')
        assert not scheduler.is_scheduled('manual')
        assert scheduler.next_run_at('hourly') == _utc(2024, 1, 1, 11)
        assert scheduler.list_scheduled() == ['hourly']

        assert scheduler.unschedule('hourly') is True
        assert scheduler.unschedule('hourly') is False
        assert scheduler.next_run_at('hourly') is None
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_schedules_all_and_stop_cancels(self) -> None:
        registry = WorkflowRegistry()
        registry['b'] = _workflow('b', schedule='*/5 * * * *')
        registry['a'] = _workflow('a', schedule='0 0 * * 0')
        registry['manual'] = _workflow('manual')
        clock = FakeClock(_utc(2024, 1, 1))
        scheduler = Scheduler(registry, _coordinator(), clock=clock, sleep=FakeSleeper(clock, []))

        await scheduler.start()
        await scheduler.start()
        assert scheduler.list_scheduled() == ['a', 'b']

        timers = list(scheduler._timers.values())
        await scheduler.stop()
        assert scheduler.list_scheduled() == []
        assert all(timer.done() for timer in timers)

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self) -> None:
        registry = WorkflowRegistry()
        registry['w'] = _workflow('w', schedule='0 * * * *')
        clock = FakeClock(_utc(2024, 1, 1, 10, 30))
        scheduler = Scheduler(registry, _coordinator(), clock=clock, sleep=FakeSleeper(clock, []))

        scheduler.schedule(registry['w'])
        first = scheduler._timers['w']
        scheduler.schedule(_workflow('w', schedule='0 0 * * *'))
        await asyncio.sleep(0)

        assert first.cancelled() or first.done()
        assert scheduler.next_run_at('w') == _utc(2024, 1, 2)
        await scheduler.stop()


@pytest.mark.unit
class TestTimerLoop:
    """Tests for firing and catch-up."""

    async def _run_timer(
        self,
        workflow: Workflow,
        lateness: list[timedelta],
        *,
        start: datetime,
        max_catch_up_runs: int = 100,
        coordinator: MagicMock | None = None,
    ) -> tuple[MagicMock, FakeSleeper, Scheduler]:
        registry = WorkflowRegistry()
        registry[workflow.workflow_id] = workflow
        coordinator = coordinator or _coordinator()
        clock = FakeClock(start)
        sleeper = FakeSleeper(clock, lateness)
        scheduler = Scheduler(
            registry,
            coordinator,
            clock=clock,
            sleep=sleeper,
            max_catch_up_runs=max_catch_up_runs,
        )
        scheduler.schedule(workflow)
        await asyncio.wait_for(sleeper.idle.wait(), timeout=5)
        return coordinator, sleeper, scheduler

    @pytest.mark.asyncio
    async def test_fires_each_slot_on_time(self) -> None:
        coordinator, sleeper, scheduler = await self._run_timer(
            _workflow('w', schedule='0 * * * *'),
            [timedelta(0), timedelta(0)],
            start=_utc(2024, 1, 1, 10, 30),
        )

        assert coordinator.start_run.await_count == 2
        assert sleeper.delays == [1800.0, 3600.0, 3600.0]
        assert scheduler.next_run_at('w') == _utc(2024, 1, 1, 13)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_late_wake_without_catchup_fires_once(self) -> None:
        coordinator, _, scheduler = await self._run_timer(
            _workflow('w', schedule='0 * * * *'),
            [timedelta(hours=3, minutes=10)],
            start=_utc(2024, 1, 1, 10, 30),
        )

        assert coordinator.start_run.await_count == 1
        assert scheduler.next_run_at('w') == _utc(2024, 1, 1, 15)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_late_wake_with_catchup_fires_every_missed_slot(self) -> None:
        coordinator, _, scheduler = await self._run_timer(
            _workflow('w', schedule='0 * * * *', catchup=True),
            [timedelta(hours=3, minutes=10)],
            start=_utc(2024, 1, 1, 10, 30),
        )

        # 11:00, 12:00, 13:00, 14:00
        assert coordinator.start_run.await_count == 4
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_catchup_capped(self) -> None:
        coordinator, _, scheduler = await self._run_timer(
            _workflow('w', schedule='* * * * *', catchup=True),
            [timedelta(hours=1)],
            start=_utc(2024, 1, 1, 10, 0),
            max_catch_up_runs=5,
        )

        assert coordinator.start_run.await_count == 5
        assert scheduler.next_run_at('w') == _utc(2024, 1, 1, 11, 2)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_rejected_trigger_keeps_timer_alive(self) -> None:
        workflow = _workflow('w', schedule='0 * * * *', endDate='2024-01-01T11:30:00Z')
        coordinator, sleeper, scheduler = await self._run_timer(
            workflow,
            [timedelta(0), timedelta(0)],
            start=_utc(2024, 1, 1, 10, 30),
        )

        # 11:00 fires, 12:00 is past endDate and is skipped
        assert coordinator.start_run.await_count == 1
        assert len(sleeper.delays) == 3
        assert scheduler.is_scheduled('w')
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_coordinator_error_keeps_timer_alive(self) -> None:
        coordinator = _coordinator()
        coordinator.start_run = AsyncMock(side_effect=RuntimeError('queue broken'))
        _, sleeper, scheduler = await self._run_timer(
            _workflow('w', schedule='0 * * * *'),
            [timedelta(0), timedelta(0)],
            start=_utc(2024, 1, 1, 10, 30),
            coordinator=coordinator,
        )

        assert coordinator.start_run.await_count == 2
        assert len(sleeper.delays) == 3
        await scheduler.stop()
