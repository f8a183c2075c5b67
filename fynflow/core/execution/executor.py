# fynflow/core/execution/executor.py
"""
Task executor: runs one task attempt and returns its output.

Dispatches on task kind:

    - script:  body written to a temp ``.py`` file behind a prelude that binds
               ``params``, ``task_params`` and ``inputs``; run with the
               configured interpreter in isolated mode (``-I``)
    - process: string commands via ``/bin/sh -c``, lists exec'd directly;
               params are exported as environment variables
    - http:    one request through the shared HttpRunner

Retries, timeouts across attempts and status bookkeeping belong to the
coordinator; the executor only ever runs a single attempt.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import sys
import tempfile
from typing import Any, Mapping, Optional

import httpx

from fynflow.core.errors import ErrorCode, UnsupportedKindError
from fynflow.core.execution.http_runner import HttpRunner
from fynflow.core.execution.process_runner import run_process
from fynflow.core.logging import get_logger
from fynflow.core.models.run import TaskOutput
from fynflow.core.models.task import HttpTask, ProcessTask, ScriptTask
from fynflow.core.secrets import SecretsProvider, resolve_secrets

logger = get_logger('executor')

# Run params with these keys feed http headers/body rather than the query string.
_HTTP_RESERVED_PARAMS = frozenset({'headers', 'body'})

_SCRIPT_PRELUDE = """\
import json as _fynflow_json
params = _fynflow_json.loads({params!r})
task_params = _fynflow_json.loads({task_params!r})
inputs = {{**task_params, **params}}
del _fynflow_json

"""


def _to_json(value: Any) -> str:
    return json.dumps(value, default=str)


def _env_value(value: Any) -> str:
    return value if isinstance(value, str) else _to_json(value)


def _env_strings(values: Mapping[str, Any]) -> dict[str, str]:
    return {str(key): _env_value(value) for key, value in values.items()}


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _safe_name(task_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]', '_', task_id)[:40]


class TaskExecutor:
    """Runs single task attempts.

    Args:
        secrets: Resolves ``${secret:KEY}`` placeholders. Without a provider
            any placeholder fails the task.
        http_client: Client for http tasks; one is created lazily if omitted.
        script_interpreter: Interpreter for script tasks. Defaults to the
            interpreter running fynflow.
        base_env: Environment the process env is layered on. Defaults to
            ``os.environ`` at call time.
    """

    def __init__(
        self,
        *,
        secrets: Optional[SecretsProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        script_interpreter: Optional[str] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.secrets = secrets
        self.script_interpreter = script_interpreter or sys.executable
        self._base_env = base_env
        self._http = HttpRunner(http_client)

    def _environment(self) -> dict[str, str]:
        return dict(self._base_env if self._base_env is not None else os.environ)

    async def execute(self, task: Any, params: Mapping[str, Any]) -> TaskOutput:
        """Run one attempt of ``task`` with the run's ``params``.

        Raises:
            UnsupportedKindError: No runner exists for the task's kind.
            ExecutionError: The attempt failed (includes unresolved secrets).
            TaskTimeoutError: The attempt exceeded the task's timeout.
        """
        params = dict(params)
        match task:
            case ScriptTask():
                return await self._execute_script(task, params)
            case ProcessTask():
                return await self._execute_process(task, params)
            case HttpTask():
                return await self._execute_http(task, params)
            case _:
                kind = getattr(task, 'kind', type(task).__name__)
                raise UnsupportedKindError(
                    message=f'unsupported task kind {kind!r}',
                    code=ErrorCode.CONFIG_UNSUPPORTED_KIND,
                    notes=[f"task '{getattr(task, 'task_id', '?')}'"],
                    help_text="supported kinds: 'script', 'process', 'http'",
                )

    async def _execute_script(self, task: ScriptTask, params: dict[str, Any]) -> TaskOutput:
        body = resolve_secrets(task.script, self.secrets, task_id=task.task_id)
        source = (
            _SCRIPT_PRELUDE.format(
                params=_to_json(params), task_params=_to_json(task.params)
            )
            + body
            + '\n'
        )

        with tempfile.NamedTemporaryFile(
            mode='w',
            suffix='.py',
            prefix=f'fynflow_{_safe_name(task.task_id)}_',
            delete=False,
            encoding='utf-8',
        ) as handle:
            handle.write(source)
            script_path = handle.name

        try:
            return await run_process(
                task_id=task.task_id,
                kind=task.kind,
                timeout_ms=task.timeout_ms,
                argv=[self.script_interpreter, '-I', script_path],
                env=self._environment(),
            )
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(script_path)

    async def _execute_process(self, task: ProcessTask, params: dict[str, Any]) -> TaskOutput:
        env = self._environment()
        env.update(resolve_secrets(dict(task.env), self.secrets, task_id=task.task_id))
        env.update(_env_strings(task.params))
        env.update(_env_strings(params))

        command = resolve_secrets(task.command, self.secrets, task_id=task.task_id)
        if isinstance(command, str):
            return await run_process(
                task_id=task.task_id,
                kind=task.kind,
                timeout_ms=task.timeout_ms,
                shell_command=command,
                env=env,
                cwd=task.cwd,
            )
        return await run_process(
            task_id=task.task_id,
            kind=task.kind,
            timeout_ms=task.timeout_ms,
            argv=list(command),
            env=env,
            cwd=task.cwd,
        )

    async def _execute_http(self, task: HttpTask, params: dict[str, Any]) -> TaskOutput:
        headers = dict(task.headers)
        run_headers = params.get('headers')
        if isinstance(run_headers, Mapping):
            headers.update({str(k): str(v) for k, v in run_headers.items()})

        body = task.body if task.body is not None else params.get('body')

        query: dict[str, Any] = dict(task.query)
        query.update(task.params)
        query.update(
            {
                key: value
                for key, value in params.items()
                if key not in _HTTP_RESERVED_PARAMS and _is_scalar(value)
            }
        )
        query = {
            key: value if _is_scalar(value) else _to_json(value)
            for key, value in query.items()
            if value is not None
        }

        return await self._http.request(
            task_id=task.task_id,
            method=task.method,
            url=resolve_secrets(task.url, self.secrets, task_id=task.task_id),
            timeout_ms=task.timeout_ms,
            headers=resolve_secrets(headers, self.secrets, task_id=task.task_id),
            query=resolve_secrets(query, self.secrets, task_id=task.task_id),
            body=resolve_secrets(body, self.secrets, task_id=task.task_id),
        )

    async def aclose(self) -> None:
        """Release the http client."""
        await self._http.aclose()
