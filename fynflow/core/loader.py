# fynflow/core/loader.py
"""
Discovers workflow definition files, validates them and keeps the workflow
registry in sync with what is on disk.

A definition file is YAML (multi-document allowed) or JSON. Each document
is one workflow mapping, a list of them, or a mapping with a top-level
``workflows`` list. A definition that fails validation is logged and
skipped; it never aborts the rest of the load.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from fynflow.core.defaults import DEFAULT_DEFINITION_SUFFIXES
from fynflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    FynflowError,
    MultipleValidationErrors,
    SourceLocation,
    WorkflowValidationError,
    workflow_validation_error,
)
from fynflow.core.logging import get_logger
from fynflow.core.models.workflow import Workflow
from fynflow.core.registry.workflows import WorkflowRegistry

logger = get_logger('loader')

# pydantic error types that mean the task kind was missing or unknown
_KIND_ERROR_TYPES = frozenset({'union_tag_invalid', 'union_tag_not_found'})


def _source_key(path: str | Path) -> str:
    return str(Path(path).resolve())


def _item_workflow_id(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    workflow_id = item.get('workflowId') or item.get('workflow_id')
    return workflow_id if isinstance(workflow_id, str) else None


def locate_error(error: FynflowError, source: str, workflow_id: str | None) -> FynflowError:
    """Point an error raised inside a definition at its file and workflow."""
    if error.location is None:
        error.location = SourceLocation(file=source, line=1)
    if workflow_id:
        note = f"workflow '{workflow_id}'"
        if note not in error.notes and f"'{workflow_id}'" not in error.message:
            error.notes.insert(0, note)
    return error


def pydantic_to_validation_error(
    exc: ValidationError, source: str | None, workflow_id: str | None
) -> WorkflowValidationError:
    """Convert pydantic field errors into one WorkflowValidationError."""
    details = exc.errors(include_url=False)
    notes: list[str] = []
    for detail in details:
        loc = '.'.join(str(part) for part in detail['loc']) or '<root>'
        notes.append(f"{loc}: {detail['msg']}")

    if any(detail['type'] in _KIND_ERROR_TYPES for detail in details):
        code = ErrorCode.TASK_INVALID_KIND
        help_text = "task kind must be one of 'script', 'process', 'http'"
    else:
        code = ErrorCode.WORKFLOW_INVALID_DEFINITION
        help_text = 'fix the listed fields in the definition file'

    label = f" '{workflow_id}'" if workflow_id else ''
    return workflow_validation_error(
        f'invalid workflow definition{label}',
        code=code,
        notes=notes,
        help_text=help_text,
        source=source,
    )


class DefinitionLoader:
    """Loads workflow definitions into a WorkflowRegistry.

    The loader is the registry's only writer.
    """

    def __init__(
        self,
        registry: WorkflowRegistry | None = None,
        *,
        suffixes: Iterable[str] = DEFAULT_DEFINITION_SUFFIXES,
    ) -> None:
        self.registry = registry if registry is not None else WorkflowRegistry()
        self.suffixes: tuple[str, ...] = tuple(suffixes)
        self._errors: dict[str, list[FynflowError]] = {}  # source -> rejected definitions

    # --- discovery ---

    def is_definition_file(self, path: str | Path) -> bool:
        return Path(path).name.endswith(self.suffixes)

    def discover(self, source_dir: str | Path) -> list[Path]:
        """Definition files under ``source_dir``, recursively, in sorted order."""
        root = Path(source_dir)
        return sorted(
            p for p in root.rglob('*') if p.is_file() and self.is_definition_file(p)
        )

    # --- loading ---

    def load_all(self, source_dir: str | Path) -> dict[str, Workflow]:
        """Load every definition file under ``source_dir``.

        Workflows previously loaded from files under ``source_dir`` that no
        longer define them are removed from the registry.

        Raises:
            ConfigurationError: If ``source_dir`` is missing or not a directory.
        """
        root = Path(source_dir)
        if not root.is_dir():
            raise ConfigurationError(
                message=f"definitions directory '{source_dir}' does not exist",
                code=ErrorCode.CONFIG_INVALID_SOURCE_DIR,
                notes=[f'resolved path: {root.resolve()}'],
                help_text='create the directory or point the engine at an existing one',
            )

        try:
            files = self.discover(root)
        except OSError as exc:
            raise ConfigurationError(
                message=f"definitions directory '{source_dir}' is unreadable",
                code=ErrorCode.CONFIG_INVALID_SOURCE_DIR,
                notes=[str(exc)],
            ) from exc

        loaded: dict[str, Workflow] = {}
        seen_sources: set[str] = set()
        for path in files:
            seen_sources.add(_source_key(path))
            for workflow in self.load_file(path):
                loaded[workflow.workflow_id] = workflow

        # Files that disappeared since the last scan
        root_prefix = str(root.resolve()) + '/'
        for source in list(self._errors):
            if source.startswith(root_prefix) and source not in seen_sources:
                del self._errors[source]
        for source in self.registry.sources():
            if source.startswith(root_prefix) and source not in seen_sources:
                removed = self.registry.remove_source(source)
                if removed:
                    logger.info(f'Removed {removed} (definition file {source} is gone)')

        logger.info(
            f'Loaded {len(loaded)} workflow(s) from {len(files)} file(s) in {root}'
        )
        return loaded

    def load_one(self, path: str | Path) -> Workflow | None:
        """Load a single file and return the first valid workflow it defines."""
        workflows = self.load_file(path)
        return workflows[0] if workflows else None

    def load_file(self, path: str | Path) -> list[Workflow]:
        """Load a single file; register and return every valid workflow in it.

        Workflows this file defined before but no longer does (including
        when the file is now unreadable) are removed from the registry.
        Rejected definitions are logged and kept in ``errors()``.
        """
        source = _source_key(path)
        valid: list[Workflow] = []
        file_errors: list[FynflowError] = []
        try:
            items = self._extract_items(self._read_documents(Path(path)))
        except (OSError, UnicodeDecodeError, yaml.YAMLError, json.JSONDecodeError) as exc:
            file_errors.append(
                WorkflowValidationError(
                    message='definition file could not be parsed',
                    code=ErrorCode.DEFINITION_UNREADABLE,
                    location=SourceLocation(file=source, line=1),
                    notes=[str(exc)],
                )
            )
            items = []

        ids_in_file: set[str] = set()
        for item in items:
            try:
                workflow = self._validate(item, source)
                if workflow.workflow_id in ids_in_file:
                    raise workflow_validation_error(
                        f"workflow '{workflow.workflow_id}' is defined twice in this file",
                        code=ErrorCode.WORKFLOW_DUPLICATE_ID,
                        help_text='the first definition is kept',
                        source=source,
                    )
                self.registry.register(workflow, source=source)
            except MultipleValidationErrors as exc:
                workflow_id = _item_workflow_id(item)
                file_errors.extend(
                    locate_error(error, source, workflow_id) for error in exc.report.errors
                )
                continue
            except FynflowError as exc:
                file_errors.append(locate_error(exc, source, _item_workflow_id(item)))
                continue
            ids_in_file.add(workflow.workflow_id)
            valid.append(workflow)

        for error in file_errors:
            logger.error(f'Skipping definition:{error}')

        for stale_id in self.registry.ids_from_source(source):
            if stale_id not in ids_in_file:
                self.registry.unregister(stale_id)
                logger.info(f"Removed '{stale_id}' (no longer defined in {source})")

        if file_errors:
            self._errors[source] = file_errors
        else:
            self._errors.pop(source, None)
        return valid

    def errors(self) -> list[FynflowError]:
        """Errors from the most recent load of every file that had any."""
        return [error for source in sorted(self._errors) for error in self._errors[source]]

    def _read_documents(self, path: Path) -> list[Any]:
        text = path.read_text(encoding='utf-8')
        if path.name.endswith('.json'):
            return [json.loads(text)]
        return [doc for doc in yaml.safe_load_all(text) if doc is not None]

    def _extract_items(self, documents: list[Any]) -> list[Any]:
        """Flatten documents into a list of candidate workflow mappings."""
        items: list[Any] = []
        for document in documents:
            if isinstance(document, list):
                items.extend(document)
            elif isinstance(document, dict) and isinstance(document.get('workflows'), list):
                items.extend(document['workflows'])
            else:
                items.append(document)
        return items

    def _validate(self, item: Any, source: str) -> Workflow:
        """Validate one mapping; pydantic field errors become FynflowErrors."""
        if not isinstance(item, dict):
            raise workflow_validation_error(
                'workflow definition must be a mapping',
                code=ErrorCode.WORKFLOW_INVALID_DEFINITION,
                notes=[f'got {type(item).__name__}'],
                source=source,
            )
        try:
            return Workflow.model_validate(item, context={'source': source})
        except ValidationError as exc:
            raise pydantic_to_validation_error(exc, source, _item_workflow_id(item)) from None

    # --- registry access ---

    def remove(self, workflow_id: str) -> bool:
        """Remove a workflow. Idempotent."""
        removed = self.registry.unregister(workflow_id)
        if removed:
            logger.info(f"Removed workflow '{workflow_id}'")
        return removed

    def remove_source(self, path: str | Path) -> list[str]:
        """Remove every workflow that ``path`` defined."""
        source = _source_key(path)
        self._errors.pop(source, None)
        removed = self.registry.remove_source(source)
        if removed:
            logger.info(f'Removed {removed} (definition file {path} deleted)')
        return removed

    def get(self, workflow_id: str) -> Workflow | None:
        return self.registry.get(workflow_id)

    def get_all(self) -> list[Workflow]:
        return self.registry.all()
