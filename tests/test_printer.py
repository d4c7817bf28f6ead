from __future__ import annotations

from datetime import datetime, timezone

import allure
import pytest
from support import tool_use

from storyloop.agent.events import normalize_record
from storyloop.output.printer import PLAIN_THEME, ConsolePrinter, describe_tool
from storyloop.output.progress import LiveProgress, ProgressUpdate, render_status_line
from storyloop.workflow.models import QueueSummary, StepResult, StoryResult

pytestmark = [
    allure.epic("Terminal Output"),
    allure.feature("Console Printer"),
]


def _printer(**kwargs: int) -> tuple[ConsolePrinter, list[str]]:
    lines: list[str] = []
    return ConsolePrinter(theme=PLAIN_THEME, echo=lines.append, **kwargs), lines


@pytest.mark.parametrize(
    ("name", "params", "summary"),
    [
        ("Bash", {"command": "pytest -q", "description": "Run tests"}, "Run tests"),
        ("Bash", {"command": "pytest -q"}, "pytest -q"),
        ("Read", {"file_path": "src/app.py"}, "src/app.py"),
        ("Write", {"file_path": "a.txt", "content": "1\n2\n3"}, "a.txt, 3 lines"),
        ("Grep", {"pattern": "TODO", "path": "src"}, "TODO in src"),
        ("Glob", {"pattern": "**/*.py"}, "**/*.py"),
        ("WebSearch", {"query": "pyyaml safe_load"}, "pyyaml safe_load"),
        ("Skill", {"skill": "pdf", "args": "report.pdf"}, "pdf report.pdf"),
        (
            "TodoWrite",
            {"todos": [{"content": "a", "status": "completed"}, {"content": "b"}]},
            "1/2 done",
        ),
        ("Mystery", {"x": 1}, '{"x": 1}'),
    ],
)
def test_describe_tool(name: str, params: dict, summary: str) -> None:
    event = normalize_record(tool_use("t1", name, params))

    assert describe_tool(event) == summary


def test_tool_use_line_is_clipped() -> None:
    printer, lines = _printer(truncate_length=10)

    printer.tool_use(normalize_record(tool_use("t1", "Bash", {"command": "x" * 40})))

    assert lines == ["● Bash(xxxxxxx...)"]


def test_tool_result_truncates_long_output() -> None:
    printer, lines = _printer(truncate_lines=2)

    printer.tool_result("one\ntwo\nthree\nfour", "")

    assert lines == ["  ⎿ one", "  ⎿ two", "  ⎿ ... (2 more lines)"]


def test_empty_tool_result_is_marked() -> None:
    printer, lines = _printer()

    printer.tool_result("", "  \n")

    assert lines == ["  ⎿ (no output)"]


def test_rate_limit_wait_mentions_reset_time() -> None:
    printer, lines = _printer()

    printer.rate_limit_wait(90, datetime(2026, 3, 14, 15, 30, tzinfo=timezone.utc))

    assert lines == ["Rate limited; waiting 1m30s (resets 15:30 UTC)"]


def test_command_footer_reports_exit_code_on_failure() -> None:
    printer, lines = _printer()

    printer.command_footer(2.5, False, 3)

    assert lines == ["✗ in 2.5s (exit code 3)"]


def test_cycle_summary_lists_steps() -> None:
    printer, lines = _printer()
    steps = [StepResult("code-review", 65, True), StepResult("git-commit", 4, True)]

    printer.cycle_summary("1-2-b", steps, 3700)

    assert lines == [
        "Story 1-2-b complete",
        "✓ code-review 1m05s",
        "✓ git-commit 4.0s",
        "Total: 1h01m",
    ]


def test_queue_summary_lists_every_story() -> None:
    printer, lines = _printer()
    summary = QueueSummary(
        story_keys=("a", "b", "c", "d"),
        results=(
            StoryResult("a", 1, True, skipped=True),
            StoryResult("b", 1, True),
            StoryResult("c", 1, False, failed_at="dev-story"),
        ),
        total_duration_seconds=3,
        exit_code=1,
    )

    printer.queue_summary(summary)

    assert lines == [
        "Queue summary: completed=1 skipped=1 failed=1 remaining=1 duration=3.0s",
        "  ↷ a",
        "  ✓ b",
        "  ✗ c (failed at dev-story)",
        "  - d (not attempted)",
    ]


def test_colored_theme_styles_lines() -> None:
    lines: list[str] = []
    printer = ConsolePrinter(echo=lines.append)

    printer.error("boom")

    assert lines[0] != "Error: boom"
    assert "Error: boom" in lines[0]


def test_live_progress_renders_published_updates() -> None:
    rendered: list[ProgressUpdate] = []
    update = ProgressUpdate(label="dev-story: 1-1-a", elapsed_seconds=1.0)

    with LiveProgress(render=rendered.append) as progress:
        progress.publish(update)

    assert rendered == [update]


def test_live_progress_drops_updates_when_full() -> None:
    progress = LiveProgress(render=lambda _update: None, max_pending=1)
    update = ProgressUpdate(label="x", elapsed_seconds=0)

    progress.publish(update)
    progress.publish(update)

    assert progress.dropped == 1


def test_status_line_shows_step_and_tool(capsys: pytest.CaptureFixture[str]) -> None:
    render_status_line(
        ProgressUpdate(
            label="dev-story: 1-1-a",
            elapsed_seconds=12,
            step_index=2,
            step_total=3,
            current_tool="Bash",
            tool_count=4,
            input_tokens=10,
            output_tokens=5,
        ),
    )

    assert capsys.readouterr().err == (
        "[2/3] | dev-story: 1-1-a | running Bash | tools=4 | tokens=10/5 | 12s\n"
    )
