"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from support import ECHO_AGENT_COMMAND_TEMPLATE, STATUS_FILE_TEXT, RecordingPrinter

from storyloop.config import Settings

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(project_root=tmp_path)


@pytest.fixture()
def printer() -> RecordingPrinter:
    return RecordingPrinter()


@pytest.fixture()
def status_file(tmp_path: Path) -> Path:
    path = tmp_path / "_bmad-output" / "implementation-artifacts" / "sprint-status.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(STATUS_FILE_TEXT, encoding="utf-8")
    return path


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Point the agent command at the bundled echo agent."""

    monkeypatch.setenv("STORYLOOP_AGENT_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("STORYLOOP_COLOR", "false")
    monkeypatch.setenv("PYTHONPATH", _pythonpath_with_src())
    return ECHO_AGENT_COMMAND_TEMPLATE


def _pythonpath_with_src() -> str:
    existing = os.environ.get("PYTHONPATH", "")
    return os.pathsep.join(part for part in (str(SRC_DIR), existing) if part)
