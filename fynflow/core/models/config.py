# fynflow/core/models/config.py
from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator
from typing_extensions import Self

from fynflow.core.defaults import (
    DEFAULT_DEFINITION_SUFFIXES,
    DEFAULT_MAX_CATCH_UP_RUNS,
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_MAX_CONCURRENT_TASKS,
)
from fynflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)

ENV_PREFIX = 'FYNFLOW_'


class EngineConfig(BaseModel):
    """Engine settings. Every field has a working default."""

    model_config = ConfigDict(frozen=True)

    # Root directory scanned for definition files; None means nothing is loaded.
    definitions_dir: Optional[str] = None
    definition_suffixes: tuple[str, ...] = DEFAULT_DEFINITION_SUFFIXES
    max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS
    # Shared by all runs.
    max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS
    max_catch_up_runs: int = DEFAULT_MAX_CATCH_UP_RUNS
    # Interpreter for script tasks. None = the interpreter running fynflow.
    script_interpreter: Optional[str] = None
    # ${secret:KEY} resolves to the env var <prefix>KEY.
    secrets_env_prefix: str = 'FYNFLOW_SECRET_'

    @model_validator(mode='after')
    def validate_config(self) -> Self:
        """Collects all independent errors and raises them together."""
        report = ValidationReport('config')

        for name in ('max_concurrent_runs', 'max_concurrent_tasks', 'max_catch_up_runs'):
            value = getattr(self, name)
            if value <= 0:
                report.add(
                    ConfigurationError(
                        message=f'{name} must be positive',
                        code=ErrorCode.CONFIG_INVALID_CONCURRENCY,
                        notes=[f'got {name}={value}'],
                        help_text='use a positive integer',
                    )
                )

        if not self.definition_suffixes:
            report.add(
                ConfigurationError(
                    message='definition_suffixes must not be empty',
                    code=ErrorCode.CONFIG_INVALID_SUFFIXES,
                    help_text=f'e.g. {list(DEFAULT_DEFINITION_SUFFIXES)}',
                )
            )
        bad_suffixes = [s for s in self.definition_suffixes if not s.startswith('.')]
        if bad_suffixes:
            report.add(
                ConfigurationError(
                    message='definition suffixes must start with a dot',
                    code=ErrorCode.CONFIG_INVALID_SUFFIXES,
                    notes=[f'invalid suffixes: {bad_suffixes}'],
                    help_text="use e.g. '.fyn.yaml'",
                )
            )

        raise_collected(report)
        return self

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides: object) -> EngineConfig:
        """Build a config from ``FYNFLOW_*`` environment variables.

        A ``.env`` file is loaded first (without overriding variables that are
        already set). Keyword overrides win over the environment.
        """
        load_dotenv(dotenv_path=dotenv_path)

        values: dict[str, object] = {}
        report = ValidationReport('config')

        str_fields = {
            'definitions_dir': 'DEFINITIONS_DIR',
            'script_interpreter': 'SCRIPT_INTERPRETER',
            'secrets_env_prefix': 'SECRETS_PREFIX',
        }
        for field_name, env_name in str_fields.items():
            raw = os.getenv(ENV_PREFIX + env_name)
            if raw:
                values[field_name] = raw

        int_fields = {
            'max_concurrent_runs': 'MAX_CONCURRENT_RUNS',
            'max_concurrent_tasks': 'MAX_CONCURRENT_TASKS',
            'max_catch_up_runs': 'MAX_CATCH_UP_RUNS',
        }
        for field_name, env_name in int_fields.items():
            raw = os.getenv(ENV_PREFIX + env_name)
            if raw is None or raw == '':
                continue
            try:
                values[field_name] = int(raw)
            except ValueError:
                report.add(
                    ConfigurationError(
                        message=f'{ENV_PREFIX}{env_name} must be an integer',
                        code=ErrorCode.CONFIG_INVALID_CONCURRENCY,
                        notes=[f'got {raw!r}'],
                    )
                )

        raw_suffixes = os.getenv(ENV_PREFIX + 'DEFINITION_SUFFIXES')
        if raw_suffixes:
            values['definition_suffixes'] = tuple(
                s.strip() for s in raw_suffixes.split(',') if s.strip()
            )

        raise_collected(report)
        values.update(overrides)
        return cls(**values)

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """Log the EngineConfig in a human-readable format."""
        if logger is None:
            logger = logging.getLogger()
        logger.info('EngineConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []
        lines.append(f'  definitions_dir: {self.definitions_dir or "<none>"}')
        lines.append(f'  definition_suffixes: {", ".join(self.definition_suffixes)}')
        lines.append(f'  max_concurrent_runs: {self.max_concurrent_runs}')
        lines.append(f'  max_concurrent_tasks: {self.max_concurrent_tasks}')
        lines.append(f'  max_catch_up_runs: {self.max_catch_up_runs}')
        lines.append(f'  script_interpreter: {self.script_interpreter or "<current>"}')
        # Only the prefix is shown, never secret values
        lines.append(f'  secrets_env_prefix: {self.secrets_env_prefix}')
        return '\n'.join(lines)
