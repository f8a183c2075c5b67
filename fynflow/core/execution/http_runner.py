# fynflow/core/execution/http_runner.py
"""Runs http tasks through one shared httpx.AsyncClient."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Optional

import httpx

from fynflow.core.errors import ExecutionError, TaskTimeoutError
from fynflow.core.logging import get_logger
from fynflow.core.models.run import TaskOutput

logger = get_logger('executor')


def _decode_body(response: httpx.Response, method: str) -> Any:
    if method == 'HEAD' or not response.content:
        return None
    content_type = response.headers.get('content-type', '')
    if 'json' in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class HttpRunner:
    """Issues http task requests.

    The client is created on first use and reused by every task, so
    connections are pooled across runs. Pass ``client`` to inject one
    (e.g. backed by ``httpx.MockTransport`` in tests).
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def request(
        self,
        *,
        task_id: str,
        method: str,
        url: str,
        timeout_ms: int,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> TaskOutput:
        """Send one request; any non-2xx status fails the task.

        Raises:
            TaskTimeoutError: No complete response within ``timeout_ms``.
            ExecutionError: Transport failure or non-2xx status; the httpx
                exception is attached as the cause.
        """
        timeout_s = timeout_ms / 1000
        kwargs: dict[str, Any] = {
            'headers': dict(headers or {}),
            'params': dict(query or {}),
            'timeout': httpx.Timeout(timeout_s),
        }
        if isinstance(body, (str, bytes)):
            kwargs['content'] = body
        elif body is not None:
            kwargs['json'] = body

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.request(method, url, **kwargs), timeout=timeout_s
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            raise TaskTimeoutError(task_id, timeout_ms) from None
        except httpx.RequestError as exc:
            raise ExecutionError(
                f"task '{task_id}' {method} {url} failed: {exc}",
                task_id=task_id,
                cause=exc,
            ) from exc

        duration_ms = (time.monotonic() - started) * 1000
        body_out = _decode_body(response, method)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExecutionError(
                f"task '{task_id}' {method} {url} returned HTTP {response.status_code}",
                task_id=task_id,
                stdout=response.text,
                cause=exc,
            ) from exc

        logger.debug(
            f"Task '{task_id}' {method} {url} -> {response.status_code} "
            f'in {duration_ms:.0f}ms'
        )
        return TaskOutput(
            kind='http',
            status_code=response.status_code,
            headers=dict(response.headers),
            body=body_out,
            duration_ms=duration_ms,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
