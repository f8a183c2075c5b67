# fynflow/core/models/task.py
"""
Task definitions.

A task is one unit of work inside a workflow. Three kinds exist, each with
its own payload:

    - script:  a Python source body, run in a fresh interpreter
    - process: a shell command string or an argv list
    - http:    a single HTTP request

Definition files use camelCase keys (``taskId``, ``dependsOn``,
``timeoutMs``); snake_case names are accepted too.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Self

from fynflow.core.defaults import (
    DEFAULT_HTTP_TIMEOUT_MS,
    DEFAULT_PROCESS_TIMEOUT_MS,
    DEFAULT_SCRIPT_TIMEOUT_MS,
)
from fynflow.core.errors import (
    ErrorCode,
    ValidationReport,
    WorkflowValidationError,
    raise_collected,
)

TaskKind = Literal['script', 'process', 'http']
HttpMethod = Literal['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD']

# Kind names used by older definition files.
LEGACY_KIND_ALIASES: dict[str, str] = {
    'shell': 'process',
}

# Older kinds with no runner here, and what to use instead.
RETIRED_KINDS: dict[str, str] = {
    'javascript': (
        "rewrite the body in Python as a 'script' task, or run node from a "
        "'process' task: command: ['node', 'job.js']"
    ),
}


class BaseTask(BaseModel):
    """Fields shared by every task kind."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra='forbid',
    )

    task_id: str = Field(min_length=1, description='Unique id within the workflow')
    description: str | None = None
    timeout_ms: int = Field(default=DEFAULT_SCRIPT_TIMEOUT_MS, gt=0)
    retries: int = Field(default=0, ge=0, description='Extra attempts after a failure')
    depends_on: tuple[str, ...] = Field(default=(), description='Upstream task ids')
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator('depends_on', mode='before')
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        # A lone string is a single dependency; duplicates collapse
        if isinstance(value, str):
            return (value,)
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(dict.fromkeys(value))
        return value


class ScriptTask(BaseTask):
    """Runs ``script`` as a Python program with the run params bound."""

    kind: Literal['script'] = 'script'
    script: str = Field(min_length=1)


class ProcessTask(BaseTask):
    """Runs a command; a string goes through ``/bin/sh -c``, a list is exec'd."""

    kind: Literal['process'] = 'process'
    command: str | list[str]
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    timeout_ms: int = Field(default=DEFAULT_PROCESS_TIMEOUT_MS, gt=0)

    @model_validator(mode='after')
    def validate_command(self) -> Self:
        report = ValidationReport('task')
        if isinstance(self.command, str) and not self.command.strip():
            report.add(
                WorkflowValidationError(
                    message='process task has an empty command',
                    code=ErrorCode.TASK_MISSING_PAYLOAD,
                    notes=[f"task '{self.task_id}'"],
                    help_text='set command to a shell string or a non-empty argv list',
                )
            )
        if isinstance(self.command, list) and not self.command:
            report.add(
                WorkflowValidationError(
                    message='process task has an empty argv list',
                    code=ErrorCode.TASK_MISSING_PAYLOAD,
                    notes=[f"task '{self.task_id}'"],
                    help_text='the first argv element is the program to run',
                )
            )
        raise_collected(report)
        return self


class HttpTask(BaseTask):
    """Issues one HTTP request. Non-2xx responses fail the task."""

    kind: Literal['http'] = 'http'
    url: str = Field(min_length=1)
    method: HttpMethod = 'GET'
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int = Field(default=DEFAULT_HTTP_TIMEOUT_MS, gt=0)

    @field_validator('method', mode='before')
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode='after')
    def validate_url(self) -> Self:
        report = ValidationReport('task')
        # Secret placeholders may stand in for the whole host, so only the scheme is checked
        scheme = urlsplit(self.url).scheme
        if scheme not in ('http', 'https') and not self.url.startswith('${'):
            report.add(
                WorkflowValidationError(
                    message='http task url must use http or https',
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    notes=[f"task '{self.task_id}' url: {self.url!r}"],
                    help_text='use an absolute url such as https://example.com/hook',
                )
            )
        raise_collected(report)
        return self


Task = Annotated[
    Union[ScriptTask, ProcessTask, HttpTask],
    Field(discriminator='kind'),
]

_task_adapter: TypeAdapter[Any] = TypeAdapter(Task)


def normalize_task_data(data: Any) -> Any:
    """Map legacy kind names (and the legacy ``type`` key) onto ``kind``.

    Raises:
        WorkflowValidationError: The kind is a retired one (``javascript``).
    """
    if not isinstance(data, dict):
        return data
    normalized = dict(data)
    if 'kind' not in normalized and 'type' in normalized:
        normalized['kind'] = normalized.pop('type')
    kind = normalized.get('kind')
    if isinstance(kind, str) and kind in RETIRED_KINDS:
        raise WorkflowValidationError(
            message=f"task kind '{kind}' is no longer supported",
            code=ErrorCode.TASK_INVALID_KIND,
            notes=[f"task '{normalized.get('taskId') or normalized.get('task_id') or '?'}'"],
            help_text=RETIRED_KINDS[kind],
        )
    if isinstance(kind, str):
        normalized['kind'] = LEGACY_KIND_ALIASES.get(kind, kind)
    return normalized


def parse_task(data: Any) -> ScriptTask | ProcessTask | HttpTask:
    """Validate one task mapping into its kind-specific model."""
    return _task_adapter.validate_python(normalize_task_data(data))
