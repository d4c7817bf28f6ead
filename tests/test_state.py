from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from storyloop.state import STATE_FILE_NAME, LifecycleState, NoStateError, StateManager

pytestmark = [
    allure.epic("Story Status"),
    allure.feature("Resume State"),
]


def test_save_and_load(tmp_path: Path) -> None:
    manager = StateManager(tmp_path)
    state = LifecycleState(
        story_key="4-2-x",
        step_index=1,
        total_steps=3,
        start_status="in-progress",
    )

    manager.save(state)

    assert manager.exists()
    assert manager.path == tmp_path / STATE_FILE_NAME
    assert manager.load() == state
    assert json.loads(manager.path.read_text(encoding="utf-8"))["story_key"] == "4-2-x"
    assert not (tmp_path / (STATE_FILE_NAME + ".tmp")).exists()


def test_load_without_file_raises(tmp_path: Path) -> None:
    with pytest.raises(NoStateError):
        StateManager(tmp_path).load()


def test_clear_is_idempotent(tmp_path: Path) -> None:
    manager = StateManager(tmp_path)
    manager.save(LifecycleState(story_key="a", step_index=0, total_steps=1, start_status="review"))

    manager.clear()
    manager.clear()

    assert not manager.exists()


@pytest.mark.parametrize(
    "payload",
    [
        "[]",
        '{"story_key": "a"}',
        '{"story_key": "a", "step_index": "x", "total_steps": 1, "start_status": "review"}',
    ],
)
def test_invalid_state_raises_value_error(tmp_path: Path, payload: str) -> None:
    (tmp_path / STATE_FILE_NAME).write_text(payload, encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid lifecycle state"):
        StateManager(tmp_path).load()
