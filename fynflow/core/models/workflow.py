# fynflow/core/models/workflow.py
"""
Workflow definition model.

A workflow is an ordered list of tasks forming a DAG through ``dependsOn``,
optionally driven by a cron ``schedule`` and bounded by a validity window.
All structural checks run once, at load time, and are reported together.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from typing_extensions import Self

from fynflow.core.errors import (
    ErrorCode,
    ValidationReport,
    WorkflowValidationError,
    raise_collected,
    workflow_validation_error,
)
from fynflow.core.models.task import (
    Task,
    normalize_task_data,
)
from fynflow.core.scheduler.cron import InvalidCronExpression, parse_cron

# Key names used by older definition files.
_LEGACY_WORKFLOW_KEYS = {'timeout': 'timeoutMs', 'retryDelay': 'retryDelayMs'}

# (camelCase, snake_case, minimum) of the workflow fields tasks inherit
_TASK_DEFAULT_FIELDS = (('timeoutMs', 'timeout_ms', 1), ('retries', 'retries', 0))


def _with_defaults(task: Any, defaults: dict[str, int]) -> Any:
    if not isinstance(task, dict):
        return task
    merged = dict(task)
    for camel, snake, _ in _TASK_DEFAULT_FIELDS:
        if camel in defaults and camel not in merged and snake not in merged:
            merged[camel] = defaults[camel]
    return merged


class Workflow(BaseModel):
    """
    Declarative workflow definition.

    Fields:
        - workflow_id: Unique id across the registry
        - schedule: Optional five-field cron expression, evaluated in UTC
        - start_date / end_date: Optional validity window for triggers
        - catchup: Fire once per missed slot when a timer wakes late
        - max_active_runs: Cap on concurrently non-terminal runs
        - params: Default run params, overridden by trigger params
        - timeout_ms / retries: Defaults for tasks that do not set their own
        - retry_delay_ms: Pause between a failed attempt and the next one
        - tasks: Non-empty list of tasks
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra='forbid',
    )

    workflow_id: str = ''
    description: str | None = None
    owner: str | None = None
    tags: tuple[str, ...] = ()
    schedule: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    catchup: bool = False
    max_active_runs: int | None = Field(default=None, gt=0)
    params: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, gt=0)
    retries: int | None = Field(default=None, ge=0)
    retry_delay_ms: int = Field(default=0, ge=0)
    tasks: tuple[Task, ...] = ()

    @model_validator(mode='before')
    @classmethod
    def _apply_task_defaults(cls, data: Any) -> Any:
        """Accept the older ``timeout``/``retryDelay`` keys and push the
        workflow-wide ``timeoutMs``/``retries`` into tasks that omit them."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, key in _LEGACY_WORKFLOW_KEYS.items():
            if legacy in data and key not in data:
                data[key] = data.pop(legacy)

        defaults: dict[str, int] = {}
        for camel, snake, minimum in _TASK_DEFAULT_FIELDS:
            value = data.get(camel, data.get(snake))
            # Invalid values are reported once, on the workflow field
            if isinstance(value, int) and not isinstance(value, bool) and value >= minimum:
                defaults[camel] = value

        tasks = data.get('tasks')
        if defaults and isinstance(tasks, (list, tuple)):
            data['tasks'] = [_with_defaults(task, defaults) for task in tasks]
        return data

    @field_validator('schedule', mode='before')
    @classmethod
    def _blank_schedule_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator('start_date', 'end_date', mode='after')
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator('tasks', mode='before')
    @classmethod
    def _normalize_tasks(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [normalize_task_data(item) for item in value]
        return value

    @model_validator(mode='after')
    def validate_definition(self, info: ValidationInfo) -> Self:
        """Collect every structural error and raise them together."""
        source = info.context.get('source') if info.context else None
        report = ValidationReport('workflow')
        report.extend(self._collect_identity_errors(source))
        report.extend(self._collect_schedule_errors(source))
        report.extend(self._collect_task_errors(source))
        report.extend(self._collect_window_errors(source))
        raise_collected(report)
        return self

    def _collect_identity_errors(self, source: str | None) -> list[WorkflowValidationError]:
        if self.workflow_id.strip():
            return []
        return [
            workflow_validation_error(
                'workflow has no workflowId',
                code=ErrorCode.WORKFLOW_NO_ID,
                help_text='add a non-empty workflowId to the definition',
                source=source,
            )
        ]

    def _collect_schedule_errors(self, source: str | None) -> list[WorkflowValidationError]:
        if self.schedule is None:
            return []
        try:
            parse_cron(self.schedule)
        except InvalidCronExpression as exc:
            return [
                workflow_validation_error(
                    'invalid schedule expression',
                    code=ErrorCode.WORKFLOW_INVALID_SCHEDULE,
                    notes=[f"workflow '{self.workflow_id}'", exc.reason],
                    help_text=(
                        'use five fields: minute hour day month weekday\n'
                        "e.g. '*/15 * * * *' or '0 9 * * 1-5'"
                    ),
                    source=source,
                )
            ]
        return []

    def _collect_task_errors(self, source: str | None) -> list[WorkflowValidationError]:
        """Check ids, dependency references and acyclicity. Returns all errors."""
        errors: list[WorkflowValidationError] = []

        if not self.tasks:
            errors.append(
                workflow_validation_error(
                    'workflow has no tasks',
                    code=ErrorCode.WORKFLOW_NO_TASKS,
                    notes=[f"workflow '{self.workflow_id}'"],
                    help_text='declare at least one task under tasks',
                    source=source,
                )
            )
            return errors

        # 1. Unique task ids
        seen: set[str] = set()
        duplicates: list[str] = []
        for task in self.tasks:
            if task.task_id in seen and task.task_id not in duplicates:
                duplicates.append(task.task_id)
            seen.add(task.task_id)
        for task_id in duplicates:
            errors.append(
                workflow_validation_error(
                    f"duplicate task id '{task_id}'",
                    code=ErrorCode.WORKFLOW_DUPLICATE_TASK_ID,
                    notes=[f"workflow '{self.workflow_id}'"],
                    help_text='each taskId must be unique within its workflow',
                    source=source,
                )
            )

        # 2. Dependency references
        for task in self.tasks:
            for dep in task.depends_on:
                if dep == task.task_id:
                    errors.append(
                        workflow_validation_error(
                            f"task '{task.task_id}' depends on itself",
                            code=ErrorCode.WORKFLOW_SELF_DEPENDENCY,
                            notes=[f"workflow '{self.workflow_id}'"],
                            help_text=f"remove '{dep}' from its own dependsOn",
                            source=source,
                        )
                    )
                elif dep not in seen:
                    errors.append(
                        workflow_validation_error(
                            'dependency references task not in workflow',
                            code=ErrorCode.WORKFLOW_INVALID_DEPENDENCY,
                            notes=[
                                f"task '{task.task_id}' depends on unknown task '{dep}'",
                                f'known tasks: {sorted(seen)}',
                            ],
                            help_text='fix the taskId in dependsOn or add the missing task',
                            source=source,
                        )
                    )

        # 3. Cycle detection (Kahn's algorithm); self-loops are reported above
        if not duplicates:
            remaining = self._unsorted_after_kahn()
            if remaining:
                errors.append(
                    workflow_validation_error(
                        'cycle detected in workflow DAG',
                        code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
                        notes=[
                            f'tasks involved: {remaining}',
                            'workflows must be acyclic directed graphs (DAG)',
                        ],
                        help_text='remove circular dependencies between tasks',
                        source=source,
                    )
                )

        return errors

    def _collect_window_errors(self, source: str | None) -> list[WorkflowValidationError]:
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.start_date > self.end_date
        ):
            return [
                workflow_validation_error(
                    'startDate is after endDate',
                    code=ErrorCode.WORKFLOW_INVALID_WINDOW,
                    notes=[
                        f'startDate: {self.start_date.isoformat()}',
                        f'endDate: {self.end_date.isoformat()}',
                    ],
                    help_text='swap the dates or remove one bound',
                    source=source,
                )
            ]
        return []

    # --- graph helpers ---

    def _kahn(self) -> tuple[list[str], list[str]]:
        """Return (sorted ids, ids left with unmet in-degree)."""
        known = {task.task_id for task in self.tasks}
        in_degree: dict[str, int] = {task.task_id: 0 for task in self.tasks}
        dependents: dict[str, list[str]] = {task.task_id: [] for task in self.tasks}
        for task in self.tasks:
            for dep in task.depends_on:
                if dep in known and dep != task.task_id:
                    in_degree[task.task_id] += 1
                    dependents[dep].append(task.task_id)

        queue = deque(t.task_id for t in self.tasks if in_degree[t.task_id] == 0)
        ordered: list[str] = []
        while queue:
            task_id = queue.popleft()
            ordered.append(task_id)
            for child in dependents[task_id]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        remaining = [t.task_id for t in self.tasks if in_degree[t.task_id] > 0]
        return ordered, remaining

    def _unsorted_after_kahn(self) -> list[str]:
        return self._kahn()[1]

    def topological_order(self) -> list[str]:
        """Task ids in an order where every task follows its dependencies."""
        return self._kahn()[0]

    def window_violation(self, moment: datetime) -> str | None:
        """Describe why ``moment`` falls outside the validity window, or None."""
        if self.start_date is not None and moment < self.start_date:
            return f'before startDate {self.start_date.isoformat()}'
        if self.end_date is not None and moment > self.end_date:
            return f'after endDate {self.end_date.isoformat()}'
        return None
