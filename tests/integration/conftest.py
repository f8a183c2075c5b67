"""Integration test fixtures: an Engine over a temporary definitions directory."""

from __future__ import annotations

import textwrap
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from fynflow.core.app import Engine
from fynflow.core.models.config import EngineConfig
from fynflow.core.secrets import MappingSecretsProvider


def write_definition(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.write_text(textwrap.dedent(content))
    return path


@pytest.fixture
def definitions_dir(tmp_path: Path) -> Path:
    directory = tmp_path / 'workflows'
    directory.mkdir()
    return directory


@pytest_asyncio.fixture
async def engine(definitions_dir: Path) -> AsyncGenerator[Engine, None]:
    engine = Engine(
        EngineConfig(definitions_dir=str(definitions_dir)),
        secrets=MappingSecretsProvider({'GREETING': 'hi'}),
    )
    yield engine
    await engine.stop()
