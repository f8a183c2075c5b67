# fynflow/core/registry/workflows.py
from __future__ import annotations

import threading
from typing import Dict, Iterator, MutableMapping

from fynflow.core.errors import DuplicateWorkflowError, WorkflowNotFoundError
from fynflow.core.models.workflow import Workflow


class WorkflowRegistry(MutableMapping[str, Workflow]):
    """Registry mapping workflow id -> Workflow.

    Tracks the definition file each workflow came from:
    - Same id + same source: replace (reload of an edited file)
    - Same id + different source: raise DuplicateWorkflowError, first wins

    All access goes through one re-entrant lock, so a file watcher thread
    and the event loop can share the registry.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Workflow] = {}
        self._sources: Dict[str, str | None] = {}  # workflow_id -> source file
        self._lock = threading.RLock()

    def __getitem__(self, key: str) -> Workflow:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise WorkflowNotFoundError(key) from None

    def __setitem__(self, key: str, value: Workflow) -> None:
        """Direct assignment registers without a source."""
        if key != value.workflow_id:
            raise ValueError(
                f"registry key '{key}' does not match workflow id '{value.workflow_id}'"
            )
        self.register(value)

    def __delitem__(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                raise WorkflowNotFoundError(key)
            del self._data[key]
            self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._data))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    # --- convenience ---
    def register(self, workflow: Workflow, *, source: str | None = None) -> Workflow:
        """Insert or replace a workflow.

        Args:
            workflow: Validated workflow definition.
            source: Definition file path the workflow was read from.

        Returns:
            The registered workflow.

        Raises:
            DuplicateWorkflowError: If the id is already registered from a
                different source.
        """
        workflow_id = workflow.workflow_id
        with self._lock:
            if workflow_id in self._data:
                existing_source = self._sources.get(workflow_id)
                if existing_source != source:
                    raise DuplicateWorkflowError(workflow_id, source, existing_source)
            self._data[workflow_id] = workflow
            self._sources[workflow_id] = source
            return workflow

    def unregister(self, workflow_id: str) -> bool:
        """Remove a workflow. Returns False if it was not registered."""
        with self._lock:
            if workflow_id not in self._data:
                return False
            del self._data[workflow_id]
            self._sources.pop(workflow_id, None)
            return True

    def source_of(self, workflow_id: str) -> str | None:
        with self._lock:
            return self._sources.get(workflow_id)

    def ids_from_source(self, source: str) -> list[str]:
        with self._lock:
            return [wid for wid, src in self._sources.items() if src == source]

    def sources(self) -> set[str]:
        with self._lock:
            return {src for src in self._sources.values() if src is not None}

    def remove_source(self, source: str) -> list[str]:
        """Remove every workflow registered from ``source``."""
        with self._lock:
            removed = self.ids_from_source(source)
            for workflow_id in removed:
                self.unregister(workflow_id)
            return removed

    def all(self) -> list[Workflow]:
        with self._lock:
            return list(self._data.values())

