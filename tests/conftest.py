"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from helpers import AgentFactory, write_fake_agent


@pytest.fixture()
def agent_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AgentFactory:
    """Factory for fake agent executables placed first on PATH."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _factory(name: str, script: str) -> Path:
        return write_fake_agent(bin_dir, name, script)

    return _factory


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path
