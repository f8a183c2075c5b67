# fynflow/core/scheduler/service.py
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from fynflow.core.defaults import DEFAULT_MAX_CATCH_UP_RUNS
from fynflow.core.errors import (
    ConstraintViolation,
    FynflowRuntimeError,
    WorkflowNotFoundError,
)
from fynflow.core.execution.coordinator import ExecutionCoordinator
from fynflow.core.logging import get_logger
from fynflow.core.models.workflow import Workflow
from fynflow.core.scheduler.calculator import calculate_missed_runs, calculate_next_run
from fynflow.core.scheduler.cron import CronExpression, parse_cron

logger = get_logger('scheduler')

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Cron timers and triggers for registered workflows.

    Responsibilities:
    1. Keep one timer task per scheduled workflow
    2. Trigger a run at every cron slot (UTC)
    3. Check the validity window and maxActiveRuns before each trigger
    4. Handle catch-up when a timer wakes late

    The scheduler owns only the workflow id -> timer mapping; workflows are
    read from the registry at trigger time and runs belong to the coordinator.
    """

    def __init__(
        self,
        workflows: Mapping[str, Workflow],
        coordinator: ExecutionCoordinator,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        max_catch_up_runs: int = DEFAULT_MAX_CATCH_UP_RUNS,
    ) -> None:
        self.workflows = workflows
        self.coordinator = coordinator
        self.max_catch_up_runs = max_catch_up_runs
        self._clock: Clock = clock or _utc_now
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._next_runs: dict[str, datetime] = {}
        self._started = False

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now

    # --- lifecycle ---

    async def start(self) -> None:
        """Schedule every registered workflow. Idempotent."""
        if self._started:
            return
        self._started = True
        scheduled = self.schedule_all()
        logger.info(f'Scheduler started with {len(scheduled)} scheduled workflow(s)')

    async def stop(self) -> None:
        """Cancel every timer and clear the schedule."""
        timers = list(self._timers.values())
        self._timers.clear()
        self._next_runs.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._started = False
        logger.info('Scheduler stopped')

    # --- scheduling ---

    def schedule_all(self) -> list[str]:
        """Schedule every registered workflow; returns the ids now scheduled."""
        return [
            workflow.workflow_id
            for workflow in list(self.workflows.values())
            if self.schedule(workflow)
        ]

    def schedule(self, workflow: Workflow) -> bool:
        """Replace the timer for ``workflow``.

        Returns False (and leaves the workflow unscheduled) when it has no
        schedule expression. Must be called with a running event loop.
        """
        workflow_id = workflow.workflow_id
        self.unschedule(workflow_id)
        if workflow.schedule is None:
            return False

        cron = parse_cron(workflow.schedule)
        self._next_runs[workflow_id] = calculate_next_run(cron, self._now())
        self._timers[workflow_id] = asyncio.create_task(
            self._timer_loop(workflow_id, cron), name=f'timer:{workflow_id}'
        )
        logger.info(
            f"Scheduled '{workflow_id}' ({cron.expression}), "
            f'next run at {self._next_runs[workflow_id].isoformat()}'
        )
        return True

    def unschedule(self, workflow_id: str) -> bool:
        """Cancel the timer for ``workflow_id``. Returns False if none existed."""
        timer = self._timers.pop(workflow_id, None)
        self._next_runs.pop(workflow_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info(f"Unscheduled '{workflow_id}'")
        return True

    def list_scheduled(self) -> list[str]:
        return sorted(self._timers)

    def is_scheduled(self, workflow_id: str) -> bool:
        return workflow_id in self._timers

    def next_run_at(self, workflow_id: str) -> Optional[datetime]:
        return self._next_runs.get(workflow_id)

    async def _timer_loop(self, workflow_id: str, cron: CronExpression) -> None:
        """Sleep until each slot, fire, repeat until cancelled."""
        next_run = self._next_runs.get(workflow_id) or calculate_next_run(cron, self._now())
        while True:
            self._next_runs[workflow_id] = next_run
            delay = (next_run - self._now()).total_seconds()
            if delay > 0:
                await self._sleep(delay)

            # The slot slept for is due even if the clock reads slightly early
            check_time = max(self._now(), next_run)
            workflow = self.workflows.get(workflow_id)
            catchup = workflow.catchup if workflow is not None else False
            due_runs = calculate_missed_runs(
                cron,
                next_run,
                check_time,
                self.max_catch_up_runs if catchup else 1,
                label=workflow_id,
            )
            if len(due_runs) > 1:
                logger.warning(
                    f"Workflow '{workflow_id}' woke late with {len(due_runs)} due slot(s), "
                    f'catching up with cap={self.max_catch_up_runs}'
                )

            for slot in due_runs:
                await self._fire(workflow_id, slot)

            next_run = calculate_next_run(cron, check_time)

    async def _fire(self, workflow_id: str, slot: datetime) -> None:
        try:
            run_id = await self.trigger(workflow_id)
        except FynflowRuntimeError as exc:
            logger.warning(f"Scheduled trigger of '{workflow_id}' at {slot.isoformat()} skipped: {exc}")
        except Exception as exc:
            logger.error(
                f"Scheduled trigger of '{workflow_id}' at {slot.isoformat()} failed: {exc}",
                exc_info=True,
            )
        else:
            logger.info(
                f"Triggered '{workflow_id}' for slot {slot.isoformat()}: run {run_id}"
            )

    # --- triggering ---

    async def trigger(
        self, workflow_id: str, params: Optional[Mapping[str, Any]] = None
    ) -> str:
        """Start a run of ``workflow_id`` now and return its run id.

        Params are layered over the workflow's default params.

        Raises:
            WorkflowNotFoundError: The workflow is not registered.
            ConstraintViolation: Outside the validity window, or the workflow
                already has ``maxActiveRuns`` non-terminal runs.
        """
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        reason = workflow.window_violation(self._now())
        if reason is not None:
            raise ConstraintViolation(workflow_id, reason)

        if workflow.max_active_runs is not None:
            active = self.coordinator.active_run_count(workflow_id)
            if active >= workflow.max_active_runs:
                raise ConstraintViolation(
                    workflow_id,
                    f'maxActiveRuns={workflow.max_active_runs} reached ({active} active)',
                )

        merged = {**workflow.params, **(params or {})}
        return await self.coordinator.start_run(workflow_id, merged)
