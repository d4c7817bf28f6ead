"""Plain-terminal printer for workflow output."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import click

from storyloop.agent.events import (
    AskUserQuestionInput,
    BashInput,
    EditInput,
    Event,
    GlobInput,
    GrepInput,
    NotebookEditInput,
    ReadInput,
    SkillInput,
    TaskInput,
    TodoWriteInput,
    WebFetchInput,
    WebSearchInput,
    WriteInput,
)
from storyloop.workflow.models import QueueSummary, StepResult


class Printer(Protocol):
    """Presentation collaborator notified by runners and orchestrators."""

    def session_start(self) -> None: ...

    def session_end(self, duration_seconds: float, success: bool) -> None: ...

    def step_start(self, index: int, total: int, name: str) -> None: ...

    def step_end(self, duration_seconds: float, success: bool) -> None: ...

    def tool_use(self, event: Event) -> None: ...

    def tool_result(self, stdout: str, stderr: str) -> None: ...

    def text(self, message: str) -> None: ...

    def rate_limit_wait(self, wait_seconds: float, reset_time: datetime | None) -> None: ...

    def command_header(self, label: str, prompt: str) -> None: ...

    def command_footer(self, duration_seconds: float, success: bool, exit_code: int) -> None: ...

    def cycle_header(self, story_key: str) -> None: ...

    def cycle_summary(
        self,
        story_key: str,
        steps: Sequence[StepResult],
        total_seconds: float,
    ) -> None: ...

    def cycle_failed(self, story_key: str, failed_step: str, duration_seconds: float) -> None: ...

    def queue_header(self, story_keys: Sequence[str]) -> None: ...

    def queue_story_start(self, index: int, total: int, story_key: str) -> None: ...

    def queue_story_skipped(self, story_key: str) -> None: ...

    def queue_summary(self, summary: QueueSummary) -> None: ...

    def error(self, message: str) -> None: ...


@dataclass(frozen=True, slots=True)
class Theme:
    """Colors and glyphs used by :class:`ConsolePrinter`."""

    accent: str = "cyan"
    success: str = "green"
    failure: str = "red"
    warning: str = "yellow"
    muted: str = "bright_black"
    tool_glyph: str = "●"
    result_glyph: str = "⎿"
    ok_glyph: str = "✓"
    fail_glyph: str = "✗"
    skip_glyph: str = "↷"
    use_color: bool = True


PLAIN_THEME = Theme(use_color=False)


class ConsolePrinter:
    """Line-oriented printer writing through ``click.echo``."""

    def __init__(
        self,
        *,
        theme: Theme | None = None,
        truncate_lines: int = 20,
        truncate_length: int = 60,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.theme = theme or Theme()
        self.truncate_lines = truncate_lines
        self.truncate_length = truncate_length
        self._echo = echo or click.echo

    def session_start(self) -> None:
        self._line(self._style("Session started", self.theme.muted))

    def session_end(self, duration_seconds: float, success: bool) -> None:
        status = "completed" if success else "failed"
        self._line(self._style(f"Session {status}", self.theme.muted))

    def step_start(self, index: int, total: int, name: str) -> None:
        self._line(self._style(f"[{index}/{total}] {name}", self.theme.accent, bold=True))

    def step_end(self, duration_seconds: float, success: bool) -> None:
        self._line(self._status_line(success, f"Step finished in {_fmt(duration_seconds)}"))

    def tool_use(self, event: Event) -> None:
        summary = describe_tool(event)
        line = f"{self.theme.tool_glyph} {event.tool_name}"
        if summary:
            line += f"({_clip(summary, self.truncate_length)})"
        self._line(self._style(line, self.theme.accent))

    def tool_result(self, stdout: str, stderr: str) -> None:
        lines = [line for line in stdout.splitlines() if line.strip()]
        error_lines = [line for line in stderr.splitlines() if line.strip()]
        if not lines and not error_lines:
            self._line(self._style(f"  {self.theme.result_glyph} (no output)", self.theme.muted))
            return
        for text in self._truncated(lines):
            self._line(f"  {self.theme.result_glyph} {text}")
        for text in self._truncated(error_lines):
            self._line(self._style(f"  {self.theme.result_glyph} {text}", self.theme.failure))

    def text(self, message: str) -> None:
        self._line(message)

    def rate_limit_wait(self, wait_seconds: float, reset_time: datetime | None) -> None:
        reset = f" (resets {reset_time:%H:%M %Z})" if reset_time is not None else ""
        self._line(
            self._style(
                f"Rate limited; waiting {_fmt(wait_seconds)}{reset}",
                self.theme.warning,
                bold=True,
            ),
        )

    def command_header(self, label: str, prompt: str) -> None:
        self._line(self._style(f"▶ {label}", self.theme.accent, bold=True))
        self._line(self._style(f"  {_clip(prompt, self.truncate_length)}", self.theme.muted))

    def command_footer(self, duration_seconds: float, success: bool, exit_code: int) -> None:
        detail = f"in {_fmt(duration_seconds)}"
        if not success:
            detail += f" (exit code {exit_code})"
        self._line(self._status_line(success, detail))

    def cycle_header(self, story_key: str) -> None:
        self._line(self._style(f"Story lifecycle: {story_key}", self.theme.accent, bold=True))

    def cycle_summary(
        self,
        story_key: str,
        steps: Sequence[StepResult],
        total_seconds: float,
    ) -> None:
        self._line(self._style(f"Story {story_key} complete", self.theme.success, bold=True))
        for step in steps:
            detail = f"{step.name} {_fmt(step.duration_seconds)}"
            self._line(self._status_line(step.success, detail))
        self._line(f"Total: {_fmt(total_seconds)}")

    def cycle_failed(self, story_key: str, failed_step: str, duration_seconds: float) -> None:
        self._line(
            self._style(
                f"{self.theme.fail_glyph} Story {story_key} failed at {failed_step} "
                f"after {_fmt(duration_seconds)}",
                self.theme.failure,
                bold=True,
            ),
        )

    def queue_header(self, story_keys: Sequence[str]) -> None:
        self._line(self._style(f"Queue: {len(story_keys)} stories", self.theme.accent, bold=True))
        for key in story_keys:
            self._line(f"  - {key}")

    def queue_story_start(self, index: int, total: int, story_key: str) -> None:
        self._line(self._style(f"[{index}/{total}] {story_key}", self.theme.accent, bold=True))

    def queue_story_skipped(self, story_key: str) -> None:
        message = f"  {self.theme.skip_glyph} Skipped (already done)"
        self._line(self._style(message, self.theme.muted))

    def queue_summary(self, summary: QueueSummary) -> None:
        self._line(
            f"Queue summary: completed={summary.completed} skipped={summary.skipped} "
            f"failed={summary.failed} remaining={len(summary.not_attempted)} "
            f"duration={_fmt(summary.total_duration_seconds)}",
        )
        for result in summary.results:
            if result.skipped:
                self._line(self._style(f"  {self.theme.skip_glyph} {result.key}", self.theme.muted))
                continue
            detail = result.key
            if result.failed_at:
                detail += f" (failed at {result.failed_at})"
            self._line("  " + self._status_line(result.success, detail))
        for key in summary.not_attempted:
            self._line(self._style(f"  - {key} (not attempted)", self.theme.muted))

    def error(self, message: str) -> None:
        self._line(self._style(f"Error: {message}", self.theme.failure))

    def _truncated(self, lines: list[str]) -> list[str]:
        if self.truncate_lines <= 0 or len(lines) <= self.truncate_lines:
            return lines
        hidden = len(lines) - self.truncate_lines
        return [*lines[: self.truncate_lines], f"... ({hidden} more lines)"]

    def _status_line(self, success: bool, detail: str) -> str:
        if success:
            return self._style(f"{self.theme.ok_glyph} {detail}", self.theme.success)
        return self._style(f"{self.theme.fail_glyph} {detail}", self.theme.failure)

    def _style(self, text: str, color: str, *, bold: bool = False) -> str:
        if not self.theme.use_color:
            return text
        return click.style(text, fg=color, bold=bold)

    def _line(self, text: str) -> None:
        self._echo(text)


def describe_tool(event: Event) -> str:
    """One-line summary of a tool invocation's parameters."""

    params = event.tool_input
    if isinstance(params, BashInput):
        return params.description or params.command
    if isinstance(params, (ReadInput, EditInput)):
        return params.file_path
    if isinstance(params, WriteInput):
        return f"{params.file_path}, {len(params.content.splitlines())} lines"
    if isinstance(params, (GlobInput, GrepInput)):
        return f"{params.pattern} in {params.path}" if params.path else params.pattern
    if isinstance(params, WebFetchInput):
        return params.url
    if isinstance(params, WebSearchInput):
        return params.query
    if isinstance(params, TaskInput):
        return f"{params.subagent_type}: {params.description or params.prompt}"
    if isinstance(params, NotebookEditInput):
        return f"{params.notebook_path} [{params.edit_mode or 'replace'} {params.cell_id}]".strip()
    if isinstance(params, AskUserQuestionInput):
        return params.questions[0].question if params.questions else ""
    if isinstance(params, SkillInput):
        return f"{params.skill} {params.args}".strip()
    if isinstance(params, TodoWriteInput):
        done = sum(1 for todo in params.todos if todo.status == "completed")
        return f"{done}/{len(params.todos)} done"
    return event.raw_input


def _clip(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    if limit <= 0 or len(flat) <= limit:
        return flat
    return flat[: max(limit - 3, 0)] + "..."


def _fmt(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
