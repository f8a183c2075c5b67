"""fynflow - a lightweight cron and DAG workflow orchestrator"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Engine
from .core.models.config import EngineConfig
from .core.models.task import ScriptTask, ProcessTask, HttpTask, Task, parse_task
from .core.models.workflow import Workflow
from .core.models.run import Run, TaskRun, TaskOutput
from .core.types.status import (
    RunStatus,
    TaskRunStatus,
    RUN_TERMINAL_STATES,
    TASK_RUN_TERMINAL_STATES,
)
from .core.loader import DefinitionLoader
from .core.registry.workflows import WorkflowRegistry
from .core.scheduler.service import Scheduler
from .core.scheduler.cron import CronExpression, parse_cron, is_valid_cron
from .core.execution.coordinator import ExecutionCoordinator
from .core.execution.executor import TaskExecutor
from .core.secrets import SecretsProvider, MappingSecretsProvider, EnvSecretsProvider
from .core.errors import (
    ErrorCode,
    FynflowError,
    WorkflowValidationError,
    ConfigurationError,
    UnsupportedKindError,
    RegistryError,
    DuplicateWorkflowError,
    ValidationReport,
    MultipleValidationErrors,
    FynflowRuntimeError,
    NotFoundError,
    WorkflowNotFoundError,
    RunNotFoundError,
    ConstraintViolation,
    ExecutionError,
    TaskTimeoutError,
    CoordinatorClosedError,
)

__all__ = [
    # Core
    'Engine',
    'EngineConfig',
    # Definitions
    'Workflow',
    'Task',
    'ScriptTask',
    'ProcessTask',
    'HttpTask',
    'parse_task',
    'DefinitionLoader',
    'WorkflowRegistry',
    # Runs
    'Run',
    'TaskRun',
    'TaskOutput',
    'RunStatus',
    'TaskRunStatus',
    'RUN_TERMINAL_STATES',
    'TASK_RUN_TERMINAL_STATES',
    # Scheduling
    'Scheduler',
    'CronExpression',
    'parse_cron',
    'is_valid_cron',
    # Execution
    'ExecutionCoordinator',
    'TaskExecutor',
    # Secrets
    'SecretsProvider',
    'MappingSecretsProvider',
    'EnvSecretsProvider',
    # Errors
    'ErrorCode',
    'FynflowError',
    'WorkflowValidationError',
    'ConfigurationError',
    'UnsupportedKindError',
    'RegistryError',
    'DuplicateWorkflowError',
    'ValidationReport',
    'MultipleValidationErrors',
    'FynflowRuntimeError',
    'NotFoundError',
    'WorkflowNotFoundError',
    'RunNotFoundError',
    'ConstraintViolation',
    'ExecutionError',
    'TaskTimeoutError',
    'CoordinatorClosedError',
]
