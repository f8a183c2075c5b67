# fynflow/core/app.py
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx

from fynflow.core.execution.coordinator import ExecutionCoordinator
from fynflow.core.execution.executor import TaskExecutor
from fynflow.core.loader import DefinitionLoader
from fynflow.core.logging import get_logger
from fynflow.core.models.config import EngineConfig
from fynflow.core.models.run import Run
from fynflow.core.models.workflow import Workflow
from fynflow.core.registry.workflows import WorkflowRegistry
from fynflow.core.scheduler.service import Clock, Scheduler, Sleeper
from fynflow.core.secrets import EnvSecretsProvider, SecretsProvider


class Engine:
    """
    Composition root: wires loader, registry, scheduler, coordinator and
    executor together. Every collaborator is built here and handed down by
    constructor; nothing is global.

    File-watcher hooks (``on_definition_changed`` / ``on_definition_removed``)
    must run on the event loop thread; from another thread, schedule them
    with ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        secrets: Optional[SecretsProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.logger = get_logger('engine')

        self.registry = WorkflowRegistry()
        self.loader = DefinitionLoader(
            self.registry, suffixes=self.config.definition_suffixes
        )
        self.secrets: SecretsProvider = secrets or EnvSecretsProvider(
            self.config.secrets_env_prefix
        )
        self.executor = TaskExecutor(
            secrets=self.secrets,
            http_client=http_client,
            script_interpreter=self.config.script_interpreter,
        )
        self.coordinator = ExecutionCoordinator(
            self.registry,
            self.executor,
            max_concurrent_runs=self.config.max_concurrent_runs,
            max_concurrent_tasks=self.config.max_concurrent_tasks,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.coordinator,
            clock=clock,
            sleep=sleep,
            max_catch_up_runs=self.config.max_catch_up_runs,
        )
        self._stop: Optional[asyncio.Event] = None
        self._started = False

    # --- lifecycle ---

    def load(self) -> dict[str, Workflow]:
        """Load definitions from ``config.definitions_dir`` (if set).

        Raises:
            ConfigurationError: The directory does not exist.
        """
        if self.config.definitions_dir is None:
            return {}
        return self.loader.load_all(self.config.definitions_dir)

    async def start(self) -> None:
        """Load definitions, start the run workers and the cron timers."""
        if self._started:
            return
        self.load()
        await self.coordinator.start()
        await self.scheduler.start()
        self._started = True
        self.logger.info(
            f'Engine started: {len(self.registry)} workflow(s), '
            f'{len(self.scheduler.list_scheduled())} scheduled'
        )

    async def stop(self, *, cancel: bool = False) -> None:
        """Stop timers, then drain (or with ``cancel`` abort) runs and release resources."""
        await self.scheduler.stop()
        await self.coordinator.close(cancel=cancel)
        self._started = False
        self.logger.info('Engine stopped')

    def request_stop(self) -> None:
        """Ask run_forever() to return."""
        if self._stop is not None:
            self._stop.set()

    async def run_forever(self) -> None:
        """Start, then serve until request_stop() is called."""
        self._stop = asyncio.Event()
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.stop()

    # --- runs ---

    async def trigger(
        self, workflow_id: str, params: Optional[Mapping[str, Any]] = None
    ) -> str:
        return await self.scheduler.trigger(workflow_id, params)

    async def run_workflow(
        self,
        workflow_id: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Run:
        """Trigger a run and wait for it to finish."""
        run_id = await self.trigger(workflow_id, params)
        return await self.coordinator.wait_for_run(run_id, timeout=timeout)

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.coordinator.get_run(run_id)

    def get_all_runs(self) -> list[Run]:
        return self.coordinator.get_all_runs()

    # --- definition changes ---

    def on_definition_changed(self, path: str | Path) -> list[Workflow]:
        """Reload one definition file and resync its timers."""
        if not self.loader.is_definition_file(path):
            return []
        source = str(Path(path).resolve())
        before = set(self.registry.ids_from_source(source))
        workflows = self.loader.load_file(path)
        for workflow_id in before - {w.workflow_id for w in workflows}:
            self.scheduler.unschedule(workflow_id)
        if self._started:
            for workflow in workflows:
                self.scheduler.schedule(workflow)
        return workflows

    def on_definition_removed(self, path: str | Path) -> list[str]:
        """Drop every workflow a deleted file defined, with its timer."""
        removed = self.loader.remove_source(path)
        for workflow_id in removed:
            self.scheduler.unschedule(workflow_id)
        return removed

    def reload(self) -> dict[str, Workflow]:
        """Rescan the definitions directory and resync all timers."""
        loaded = self.load()
        for workflow_id in self.scheduler.list_scheduled():
            if workflow_id not in self.registry:
                self.scheduler.unschedule(workflow_id)
        if self._started:
            self.scheduler.schedule_all()
        return loaded
