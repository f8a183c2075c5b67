"""Rust-style error display for fynflow definition/config errors, plus runtime errors."""

from __future__ import annotations

import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for definition, configuration and runtime errors.

    Organized by category:
    - E001-E099: Workflow validation errors
    - E100-E199: Task definition errors
    - E200-E299: Config errors
    - E300-E399: Registry errors
    - E400-E499: Runtime errors
    """

    # Workflow validation (E001-E099)
    WORKFLOW_NO_ID = 'E001'
    WORKFLOW_NO_TASKS = 'E002'
    WORKFLOW_INVALID_SCHEDULE = 'E003'
    WORKFLOW_DUPLICATE_TASK_ID = 'E004'
    WORKFLOW_INVALID_DEPENDENCY = 'E006'
    WORKFLOW_CYCLE_DETECTED = 'E007'
    WORKFLOW_SELF_DEPENDENCY = 'E008'
    WORKFLOW_INVALID_WINDOW = 'E009'
    WORKFLOW_INVALID_DEFINITION = 'E010'

    # Task definition (E100-E199)
    TASK_INVALID_KIND = 'E100'
    TASK_MISSING_PAYLOAD = 'E101'
    TASK_INVALID_OPTIONS = 'E102'

    # Config (E200-E299)
    CONFIG_INVALID_CONCURRENCY = 'E200'
    CONFIG_INVALID_SOURCE_DIR = 'E201'
    CONFIG_INVALID_SUFFIXES = 'E202'
    CONFIG_UNSUPPORTED_KIND = 'E203'
    CLI_INVALID_ARGS = 'E206'

    # Registry (E300-E399)
    WORKFLOW_NOT_REGISTERED = 'E300'
    WORKFLOW_DUPLICATE_ID = 'E301'
    DEFINITION_UNREADABLE = 'E302'

    # Runtime (E400-E499)
    RUN_NOT_FOUND = 'E400'
    TRIGGER_CONSTRAINT_VIOLATION = 'E401'
    TASK_EXECUTION_FAILED = 'E402'
    TASK_TIMED_OUT = 'E403'
    COORDINATOR_CLOSED = 'E404'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if os.environ.get('FYNFLOW_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True

    # NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if verbose output (full traceback) should be shown."""
    return os.environ.get('FYNFLOW_VERBOSE', '').lower() in ('1', 'true', 'yes')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return os.environ.get('FYNFLOW_PLAIN_ERRORS', '').lower() in ('1', 'true', 'yes')


@dataclass
class SourceLocation:
    """Source code (or definition file) location information."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    def get_source_line(self) -> str | None:
        """Read the source line from the file."""
        try:
            line = linecache.getline(self.file, self.line)
            return line.rstrip('\n') if line else None
        except Exception:
            return None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class FynflowError(Exception):
    """Base exception for fynflow definition/config errors.

    Provides Rust-style error formatting with:
    - Error code and category
    - Source location with code snippet
    - Notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = []

        # Leading blank line for visual separation from log output
        lines.append('')

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()

            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)

                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')

                if self.location.column is not None:
                    start_col = self.location.column
                    end_col = self.location.end_column or (start_col + 1)
                    width = max(1, end_col - start_col)
                    underline = ' ' * start_col + '^' * width
                else:
                    stripped = source_line.lstrip()
                    indent = len(source_line) - len(stripped)
                    underline = ' ' * indent + '^' * len(stripped)
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        # Notes (support multi-line notes with continuation indentation)
        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            help_lines = self.help_text.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in help_lines:
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """String representation uses plain text (no ANSI colors).

        Colors are only used when printing directly to terminal via
        the custom exception hook, so the string stays safe for logs.
        """
        return self.format_rust_style(use_colors=False)


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


_original_excepthook = sys.excepthook


def _fynflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for FynflowError exceptions."""
    if _should_use_plain_errors():
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    if isinstance(exc_value, FynflowError):
        print(exc_value.format_rust_style(), file=sys.stderr)

        if _should_show_verbose():
            print(file=sys.stderr)
            c = _Colors if _should_use_colors() else _NoColors
            print(
                f'{c.DIM}Full traceback (FYNFLOW_VERBOSE=1):{c.RESET}',
                file=sys.stderr,
            )
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
    else:
        _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _fynflow_excepthook


# =============================================================================
# Definition / Configuration Errors
# =============================================================================


@dataclass
class WorkflowValidationError(FynflowError):
    """Raised when a workflow or task definition is invalid (load time)."""

    pass


@dataclass
class ConfigurationError(FynflowError):
    """Raised when engine configuration is invalid."""

    pass


@dataclass
class UnsupportedKindError(ConfigurationError):
    """Raised when a task kind has no runner. Never retried."""

    pass


@dataclass
class RegistryError(FynflowError):
    """Raised when a workflow registry operation fails."""

    pass


class DuplicateWorkflowError(RegistryError):
    """Raised when a workflow id is already registered from another source."""

    def __init__(
        self, workflow_id: str, source: str | None, existing_source: str | None
    ) -> None:
        notes = [f"first defined in: {existing_source or '<unknown>'}"]
        location = SourceLocation(file=source, line=1) if source else None
        super().__init__(
            message=f"duplicate workflow id '{workflow_id}'",
            code=ErrorCode.WORKFLOW_DUPLICATE_ID,
            location=location,
            notes=notes,
            help_text='each workflowId must be unique across all definition files',
        )
        self.workflow_id = workflow_id
        self.source = source
        self.existing_source = existing_source


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple FynflowError instances within a validation phase.

    Formats all collected errors together with a summary line,
    similar to rustc's multi-error output.
    """

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[FynflowError] = []

    def add(self, error: FynflowError) -> None:
        """Append an error to the report."""
        self.errors.append(error)

    def extend(self, errors: list[FynflowError]) -> None:
        """Append several errors to the report."""
        self.errors.extend(errors)

    def has_errors(self) -> bool:
        """Return True if any errors were collected."""
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts: list[str] = []

        for error in self.errors:
            parts.append(error.format_rust_style(use_colors=use_colors))

        count = len(self.errors)
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {count} previous errors'
        )

        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(FynflowError):
    """Wraps a ValidationReport containing 2+ errors.

    Single errors are raised as their original type so existing
    except clauses keep working.
    """

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            count = len(self.report.errors)
            self.message = f'aborting due to {count} previous errors'
        # Location is per-error in the report
        super(FynflowError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Delegate formatting to the underlying report."""
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op (returns normally)
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


# =============================================================================
# Runtime Errors
# =============================================================================


class FynflowRuntimeError(Exception):
    """Base for errors raised while triggering or executing workflows.

    Unlike FynflowError these carry no source location: they describe
    something that happened at run time, not a mistake in a definition.
    """

    code: ErrorCode | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(FynflowRuntimeError, KeyError):
    """Raised when a workflow, run or task id does not resolve.

    Inherits from KeyError so mapping-style lookups behave naturally.
    """

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


class WorkflowNotFoundError(NotFoundError):
    """Raised when a workflow id is not present in the registry."""

    code = ErrorCode.WORKFLOW_NOT_REGISTERED

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"workflow '{workflow_id}' not found")
        self.workflow_id = workflow_id


class RunNotFoundError(NotFoundError):
    """Raised when a run id is unknown to the coordinator."""

    code = ErrorCode.RUN_NOT_FOUND

    def __init__(self, run_id: str) -> None:
        super().__init__(f"run '{run_id}' not found")
        self.run_id = run_id


class ConstraintViolation(FynflowRuntimeError):
    """Raised when a trigger is rejected (validity window, max active runs)."""

    code = ErrorCode.TRIGGER_CONSTRAINT_VIOLATION

    def __init__(self, workflow_id: str, reason: str) -> None:
        super().__init__(f"workflow '{workflow_id}' cannot run: {reason}")
        self.workflow_id = workflow_id
        self.reason = reason


class ExecutionError(FynflowRuntimeError):
    """Raised when a task's kind-specific runner fails.

    Carries whatever output was captured before the failure, and the
    underlying exception (if any) as ``cause`` and ``__cause__``.
    """

    code = ErrorCode.TASK_EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        exit_code: int | None = None,
        stdout: str = '',
        stderr: str = '',
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class TaskTimeoutError(FynflowRuntimeError, TimeoutError):
    """Raised when a task exceeds its timeout."""

    code = ErrorCode.TASK_TIMED_OUT

    def __init__(
        self,
        task_id: str,
        timeout_ms: int,
        *,
        stdout: str = '',
        stderr: str = '',
    ) -> None:
        super().__init__(f"task '{task_id}' timed out after {timeout_ms}ms")
        self.task_id = task_id
        self.timeout_ms = timeout_ms
        self.stdout = stdout
        self.stderr = stderr


class CoordinatorClosedError(FynflowRuntimeError):
    """Raised when a run is started after the coordinator was closed."""

    code = ErrorCode.COORDINATOR_CLOSED

    def __init__(self) -> None:
        super().__init__('execution coordinator is closed and accepts no new runs')


# =============================================================================
# Helper Functions for Creating Errors
# =============================================================================


def workflow_validation_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
    source: str | None = None,
) -> WorkflowValidationError:
    """Create a WorkflowValidationError pointing at a definition file.

    When ``source`` is given the location is the file itself (line 1).
    Errors raised while a definition is being parsed get their location
    from the loader instead.
    """
    location = SourceLocation(file=source, line=1) if source else None
    return WorkflowValidationError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
