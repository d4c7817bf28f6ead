"""Test doubles and stream record builders."""

from __future__ import annotations

import shlex
import sys
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storyloop.agent.events import Event, normalize_record
from storyloop.agent.executor import EventHandler, StderrHandler
from storyloop.status import StatusError
from storyloop.workflow.models import QueueSummary, StepResult

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m storyloop.agent.echo_agent --prompt {{prompt}}"
)

STATUS_FILE_TEXT = """\
# generated by sprint planning
project: demo
development_status:
  epic-1: in-progress
  1-1-define-schema: done
  1-2-load-data: review  # reviewer: sam
  1-10-cleanup: backlog
  2-1-api: ready-for-dev
"""


@dataclass
class ScriptedRun:
    """One scripted agent execution."""

    records: list[dict[str, Any]] = field(default_factory=list)
    exit_code: int = 0
    stderr: list[str] = field(default_factory=list)


class ScriptedExecutor:
    """In-memory agent executor replaying scripted stream records."""

    def __init__(self, runs: Iterable[ScriptedRun] = ()) -> None:
        self.runs = list(runs)
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    def execute(
        self,
        prompt: str,
        on_event: EventHandler | None,
        model: str = "",
        *,
        on_stderr: StderrHandler | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        self.calls.append((prompt, model))
        if self.error is not None:
            raise self.error
        run = self.runs.pop(0) if self.runs else ScriptedRun()
        for record in run.records:
            if cancel_event is not None and cancel_event.is_set():
                break
            if on_event is not None:
                on_event(normalize_record(record))
        if on_stderr is not None:
            for line in run.stderr:
                on_stderr(line)
        return run.exit_code


class RecordingPrinter:
    """Printer double that records every call as ``(method, args)``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def args_of(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call_name, args in self.calls if call_name == name]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    def session_start(self) -> None:
        self._record("session_start")

    def session_end(self, duration_seconds: float, success: bool) -> None:
        self._record("session_end", duration_seconds, success)

    def step_start(self, index: int, total: int, name: str) -> None:
        self._record("step_start", index, total, name)

    def step_end(self, duration_seconds: float, success: bool) -> None:
        self._record("step_end", duration_seconds, success)

    def tool_use(self, event: Event) -> None:
        self._record("tool_use", event)

    def tool_result(self, stdout: str, stderr: str) -> None:
        self._record("tool_result", stdout, stderr)

    def text(self, message: str) -> None:
        self._record("text", message)

    def rate_limit_wait(self, wait_seconds: float, reset_time: datetime | None) -> None:
        self._record("rate_limit_wait", wait_seconds, reset_time)

    def command_header(self, label: str, prompt: str) -> None:
        self._record("command_header", label, prompt)

    def command_footer(self, duration_seconds: float, success: bool, exit_code: int) -> None:
        self._record("command_footer", duration_seconds, success, exit_code)

    def cycle_header(self, story_key: str) -> None:
        self._record("cycle_header", story_key)

    def cycle_summary(
        self,
        story_key: str,
        steps: Sequence[StepResult],
        total_seconds: float,
    ) -> None:
        self._record("cycle_summary", story_key, list(steps), total_seconds)

    def cycle_failed(self, story_key: str, failed_step: str, duration_seconds: float) -> None:
        self._record("cycle_failed", story_key, failed_step, duration_seconds)

    def queue_header(self, story_keys: Sequence[str]) -> None:
        self._record("queue_header", tuple(story_keys))

    def queue_story_start(self, index: int, total: int, story_key: str) -> None:
        self._record("queue_story_start", index, total, story_key)

    def queue_story_skipped(self, story_key: str) -> None:
        self._record("queue_story_skipped", story_key)

    def queue_summary(self, summary: QueueSummary) -> None:
        self._record("queue_summary", summary)

    def error(self, message: str) -> None:
        self._record("error", message)


class FakeStatusStore:
    """Dictionary-backed status reader and writer."""

    def __init__(self, statuses: dict[str, str]) -> None:
        self.statuses = dict(statuses)
        self.updates: list[tuple[str, str]] = []
        self.lookups: list[str] = []

    def get_story_status(self, story_key: str) -> str:
        self.lookups.append(story_key)
        try:
            return self.statuses[story_key]
        except KeyError:
            raise StatusError(f"story not found: {story_key}") from None

    def update_status(self, story_key: str, status: Any) -> None:
        value = getattr(status, "value", status)
        self.updates.append((story_key, value))
        self.statuses[story_key] = value


def assistant_text(text: str, **usage: int) -> dict[str, Any]:
    message: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if usage:
        message["usage"] = usage
    return {"type": "assistant", "message": message}


def tool_use(tool_id: str, name: str, params: Any) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": params}],
        },
    }


def tool_result(tool_use_id: str, stdout: str = "", stderr: str = "") -> dict[str, Any]:
    content = [{"type": "tool_result", "tool_use_id": tool_use_id}] if tool_use_id else []
    return {
        "type": "user",
        "message": {"content": content},
        "tool_use_result": {"stdout": stdout, "stderr": stderr},
    }


def session_records(*body: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {"type": "system", "subtype": "init", "session_id": "s-1"},
        *body,
        {"type": "result", "subtype": "success", "duration_ms": 1200, "result": "done"},
    ]
