from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import allure
from support import (
    RecordingPrinter,
    ScriptedExecutor,
    ScriptedRun,
    assistant_text,
    session_records,
    tool_result,
    tool_use,
)

from storyloop.agent.executor import EXIT_CANCELLED, ExecutorError
from storyloop.config import Settings
from storyloop.output.progress import ProgressUpdate
from storyloop.workflow.ratelimit import DEFAULT_WAIT, RateLimitDetector
from storyloop.workflow.runner import WorkflowRunner, estimate_tokens

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Orchestration Runner"),
]

NOW = datetime(2026, 3, 14, 10, 0, tzinfo=timezone.utc)


class _CollectingProgress:
    def __init__(self) -> None:
        self.updates: list[ProgressUpdate] = []

    def publish(self, update: ProgressUpdate) -> None:
        self.updates.append(update)


def _runner(
    executor: ScriptedExecutor,
    printer: RecordingPrinter,
    settings: Settings,
    **kwargs: object,
) -> tuple[WorkflowRunner, list[float]]:
    sleeps: list[float] = []
    runner = WorkflowRunner(
        executor=executor,
        printer=printer,
        settings=settings,
        detector=RateLimitDetector(now=lambda: NOW),
        sleep=sleeps.append,
        **kwargs,  # type: ignore[arg-type]
    )
    return runner, sleeps


def _printed(printer: RecordingPrinter) -> list[str]:
    ignored = {"command_header", "command_footer"}
    return [name for name in printer.names() if name not in ignored]


def test_tool_use_is_buffered_and_printed_with_its_result(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [
            ScriptedRun(
                session_records(
                    tool_use("t1", "Bash", {"command": "ls"}),
                    tool_result("t1", stdout="a.py"),
                    assistant_text("Done"),
                ),
            ),
        ],
    )
    runner, _ = _runner(executor, printer, settings)

    assert runner.run_raw("list files") == 0
    assert _printed(printer) == ["session_start", "tool_use", "tool_result", "text", "session_end"]
    assert printer.args_of("tool_result") == [("a.py", "")]


def test_out_of_order_results_pair_with_their_tool(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [
            ScriptedRun(
                [
                    tool_use("t1", "Read", {"file_path": "a.py"}),
                    tool_use("t2", "Grep", {"pattern": "TODO"}),
                    tool_result("t2", stdout="grep output"),
                    tool_result("t1", stdout="read output"),
                ],
            ),
        ],
    )
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("inspect")

    pairs = [
        (args[0].tool_name if name == "tool_use" else args[0])
        for name, args in printer.calls
        if name in ("tool_use", "tool_result")
    ]
    assert pairs == ["Grep", "grep output", "Read", "read output"]


def test_text_flushes_pending_tools_before_printing(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [ScriptedRun([tool_use("t1", "Bash", {"command": "make"}), assistant_text("Building")])],
    )
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("build")

    assert _printed(printer) == ["tool_use", "text"]
    assert not runner.correlator.has_pending()


def test_session_end_flushes_pending_tools(printer: RecordingPrinter, settings: Settings) -> None:
    executor = ScriptedExecutor(
        [ScriptedRun(session_records(tool_use("t1", "Write", {"file_path": "x", "content": ""})))],
    )
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("write")

    assert _printed(printer) == ["session_start", "tool_use", "session_end"]


def test_tool_use_left_pending_at_stream_end_is_still_printed(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor([ScriptedRun([tool_use("t1", "Bash", {"command": "sleep 1"})])])
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("wait")

    assert printer.names().count("tool_use") == 1


def test_unmatched_result_is_printed_alone(printer: RecordingPrinter, settings: Settings) -> None:
    executor = ScriptedExecutor([ScriptedRun([tool_result("ghost", stdout="orphan")])])
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("orphan")

    assert _printed(printer) == ["tool_result"]


def test_unknown_records_are_ignored(printer: RecordingPrinter, settings: Settings) -> None:
    executor = ScriptedExecutor(
        [ScriptedRun([{"type": "telemetry", "data": 1}, {"garbage": True}, assistant_text("ok")])],
    )
    runner, _ = _runner(executor, printer, settings)

    assert runner.run_raw("noise") == 0
    assert _printed(printer) == ["text"]


def test_run_single_expands_prompt_and_uses_workflow_model(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    settings.workflows["dev-story"].prompt_template = "Implement {story_key} now"
    settings.workflows["dev-story"].model = "opus"
    executor = ScriptedExecutor()
    runner, _ = _runner(executor, printer, settings)

    runner.run_single("dev-story", "3-1-auth", step_index=2, step_total=4)

    assert executor.calls == [("Implement 3-1-auth now", "opus")]
    assert printer.args_of("command_header") == [("dev-story: 3-1-auth", "Implement 3-1-auth now")]


def test_run_single_with_unknown_workflow_fails_without_running(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor()
    runner, _ = _runner(executor, printer, settings)

    assert runner.run_single("deploy", "1-1-x") == 1
    assert executor.calls == []
    assert printer.names() == ["error"]


def test_agent_exit_code_is_returned_and_reported(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    runner, _ = _runner(ScriptedExecutor([ScriptedRun(exit_code=3)]), printer, settings)

    assert runner.run_raw("fail") == 3
    _, success, exit_code = printer.args_of("command_footer")[0]
    assert (success, exit_code) == (False, 3)


def test_executor_error_maps_to_exit_code_one(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor()
    executor.error = ExecutorError("Agent command not found: claude", transient=False)
    runner, _ = _runner(executor, printer, settings)

    assert runner.run_raw("hello") == 1
    assert printer.args_of("error") == [("executing agent: Agent command not found: claude",)]
    assert printer.names()[-1] == "command_footer"


def test_rate_limit_in_tool_stderr_pauses_before_next_event(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [
            ScriptedRun(
                [
                    tool_use("t1", "Bash", {"command": "curl api"}),
                    tool_result("t1", stderr="Error: rate limit exceeded, resets 10:20"),
                    assistant_text("continuing"),
                ],
            ),
        ],
    )
    runner, sleeps = _runner(executor, printer, settings)

    runner.run_raw("call api")

    expected = (timedelta(minutes=20) + timedelta(seconds=30)).total_seconds()
    assert sleeps == [expected]
    names = printer.names()
    assert names.index("rate_limit_wait") < names.index("text")
    assert runner.rate_limit_state.is_detected()
    assert runner.last_stats is not None
    assert runner.last_stats.rate_limit_pauses == 1


def test_rate_limit_without_reset_time_waits_default(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor([ScriptedRun([tool_result("", stderr="429 Too Many Requests")])])
    runner, sleeps = _runner(executor, printer, settings)

    runner.run_raw("x")

    assert sleeps == [DEFAULT_WAIT.total_seconds()]


def test_ordinary_stderr_does_not_pause(printer: RecordingPrinter, settings: Settings) -> None:
    executor = ScriptedExecutor([ScriptedRun([tool_result("", stderr="warning: unused import")])])
    runner, sleeps = _runner(executor, printer, settings)

    runner.run_raw("x")

    assert sleeps == []
    assert not runner.rate_limit_state.is_detected()


def test_failing_tool_diagnostic_does_not_pause(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    stderr = "E   RecursionError: maximum recursion limit reached"
    executor = ScriptedExecutor([ScriptedRun([tool_result("", stderr=stderr)])])
    runner, sleeps = _runner(executor, printer, settings)

    runner.run_raw("x")

    assert sleeps == []
    assert not runner.rate_limit_state.is_detected()


def test_agent_stderr_rate_limit_marks_state_without_pausing(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor([ScriptedRun(exit_code=1, stderr=["Claude usage limit reached"])])
    runner, sleeps = _runner(executor, printer, settings)

    assert runner.run_raw("x") == 1
    assert sleeps == []
    assert runner.rate_limit_state.is_detected()


def test_rate_limit_state_is_cleared_per_execution(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [ScriptedRun(exit_code=1, stderr=["rate limit"]), ScriptedRun()],
    )
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("first")
    runner.run_raw("second")

    assert not runner.rate_limit_state.is_detected()


def test_token_counts_use_reported_usage_or_estimate(
    printer: RecordingPrinter,
    settings: Settings,
) -> None:
    executor = ScriptedExecutor(
        [
            ScriptedRun(
                [
                    assistant_text("reported", input_tokens=10, output_tokens=4),
                    assistant_text("x" * 9),
                    tool_use("t1", "Bash", {"command": "ls"}),
                    tool_result("t1"),
                ],
            ),
        ],
    )
    runner, _ = _runner(executor, printer, settings)

    runner.run_raw("count")

    stats = runner.last_stats
    assert stats is not None
    assert (stats.input_tokens, stats.output_tokens) == (10, 4 + estimate_tokens("x" * 9))
    assert stats.tool_count == 1
    assert stats.first_response_seconds is not None


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_progress_updates_are_published(printer: RecordingPrinter, settings: Settings) -> None:
    progress = _CollectingProgress()
    executor = ScriptedExecutor(
        [ScriptedRun([tool_use("t1", "Bash", {"command": "ls"}), tool_result("t1")])],
    )
    runner, _ = _runner(executor, printer, settings, progress=progress)

    runner.run_single("dev-story", "1-1-a", step_index=1, step_total=3)

    assert progress.updates[0].label == "dev-story: 1-1-a"
    assert any(update.current_tool == "Bash" for update in progress.updates)
    assert progress.updates[-1].done
    assert progress.updates[-1].tool_count == 1
    assert {update.step_total for update in progress.updates} == {3}


def test_cancel_before_start_skips_execution(printer: RecordingPrinter, settings: Settings) -> None:
    executor = ScriptedExecutor()
    cancel_event = threading.Event()
    cancel_event.set()
    runner, _ = _runner(executor, printer, settings, cancel_event=cancel_event)

    assert runner.run_raw("never") == EXIT_CANCELLED
    assert executor.calls == []


def test_cancel_during_execution_stops_dispatch_and_returns_cancelled(settings: Settings) -> None:
    runner_ref: list[WorkflowRunner] = []

    class _CancellingPrinter(RecordingPrinter):
        def text(self, message: str) -> None:
            super().text(message)
            runner_ref[0].cancel()

    cancelling = _CancellingPrinter()
    executor = ScriptedExecutor(
        [ScriptedRun([assistant_text("first"), assistant_text("second")])],
    )
    runner, _ = _runner(executor, cancelling, settings)
    runner_ref.append(runner)

    assert runner.run_raw("x") == EXIT_CANCELLED
    assert cancelling.args_of("text") == [("first",)]
