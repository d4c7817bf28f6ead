"""Resume state for interrupted lifecycle runs."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

STATE_FILE_NAME = ".storyloop-state.json"


class NoStateError(LookupError):
    """No saved lifecycle state exists."""


@dataclass(frozen=True, slots=True)
class LifecycleState:
    """Position of a story lifecycle run that has not finished yet."""

    story_key: str
    step_index: int
    total_steps: int
    start_status: str


class StateManager:
    """Persist :class:`LifecycleState` as JSON in a project directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    @property
    def path(self) -> Path:
        return self.directory / STATE_FILE_NAME

    def save(self, state: LifecycleState) -> None:
        tmp_path = self.path.with_name(STATE_FILE_NAME + ".tmp")
        tmp_path.write_text(json.dumps(asdict(state), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load(self) -> LifecycleState:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NoStateError(f"no state file at {self.path}") from None
        if not isinstance(payload, dict):
            raise ValueError(f"Invalid lifecycle state in {self.path}")
        try:
            return LifecycleState(
                story_key=str(payload["story_key"]),
                step_index=int(payload["step_index"]),
                total_steps=int(payload["total_steps"]),
                start_status=str(payload["start_status"]),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise ValueError(f"Invalid lifecycle state in {self.path}: {error}") from error

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.is_file()
