"""Shared fixtures: isolated settings, a scratch working directory and tool contexts."""

import os
from pathlib import Path

import pytest

from factories import make_settings
from tern.config import Settings
from tern.tools.registry import ToolContext


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer TERN_* / ANTHROPIC_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith(("TERN_", "ANTHROPIC_")):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, workdir: Path) -> Settings:
    return make_settings(tmp_path, working_directory=workdir)


@pytest.fixture
def small_settings(tmp_path: Path, workdir: Path) -> Settings:
    """1000-token budget so compression is easy to reach."""
    return make_settings(tmp_path, working_directory=workdir, context_max_tokens=1000)


@pytest.fixture
def tool_ctx(workdir: Path) -> ToolContext:
    return ToolContext(
        working_directory=workdir,
        session_id="sess-test",
        capabilities=frozenset({"read", "write", "execute"}),
        interactive=False,
    )
