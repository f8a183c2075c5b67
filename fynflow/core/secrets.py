# fynflow/core/secrets.py
"""
Secret lookup for task payloads.

String fields of a task may reference secrets as ``${secret:KEY}``. The
executor resolves them right before running the task, so secret values
never live in the workflow model or in logs.
"""

from __future__ import annotations

import os
import re
from typing import Any, Mapping, Protocol, runtime_checkable

from fynflow.core.errors import ExecutionError

SECRET_PLACEHOLDER = re.compile(r'\$\{secret:([A-Za-z0-9_.\-/]+)\}')


@runtime_checkable
class SecretsProvider(Protocol):
    """Anything that can look a secret up by key."""

    def get(self, key: str) -> str | None: ...


class MappingSecretsProvider:
    """Secrets held in memory. Useful for tests and embedding."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(secrets or {})

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def set(self, key: str, value: str) -> None:
        self._secrets[key] = value

    def delete(self, key: str) -> bool:
        return self._secrets.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._secrets)


class EnvSecretsProvider:
    """Secrets read from environment variables named ``<prefix><KEY>``."""

    def __init__(self, prefix: str = 'FYNFLOW_SECRET_') -> None:
        self.prefix = prefix

    def get(self, key: str) -> str | None:
        return os.environ.get(self.prefix + key)


def resolve_secrets(
    value: Any, provider: SecretsProvider | None, *, task_id: str | None = None
) -> Any:
    """Return ``value`` with every ``${secret:KEY}`` replaced.

    Walks strings, mappings (keys and values) and lists. Other values are
    returned unchanged.

    Raises:
        ExecutionError: If a placeholder has no value in ``provider``.
    """
    if isinstance(value, str):
        if SECRET_PLACEHOLDER.search(value) is None:
            return value

        def _substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            secret = provider.get(key) if provider is not None else None
            if secret is None:
                raise ExecutionError(f"secret '{key}' is not defined", task_id=task_id)
            return secret

        return SECRET_PLACEHOLDER.sub(_substitute, value)
    if isinstance(value, Mapping):
        return {
            resolve_secrets(k, provider, task_id=task_id): resolve_secrets(
                v, provider, task_id=task_id
            )
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [resolve_secrets(v, provider, task_id=task_id) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_secrets(v, provider, task_id=task_id) for v in value)
    return value
