"""Controllers for storyloop CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.agent.executor import AgentExecutor, CliAgentExecutor
from storyloop.config import Settings
from storyloop.output.printer import PLAIN_THEME, ConsolePrinter, Printer, Theme
from storyloop.output.progress import LiveProgress, NullProgress, ProgressSink
from storyloop.state import StateManager
from storyloop.status import StatusError, StatusFile
from storyloop.workflow.lifecycle import LifecycleError, LifecycleExecutor
from storyloop.workflow.models import QueueSummary, RouteOutcome, StepResult
from storyloop.workflow.queue import QueueRunner
from storyloop.workflow.retry import run_with_rate_limit_retry
from storyloop.workflow.routing import route
from storyloop.workflow.runner import WorkflowRunner

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[Settings], AgentExecutor]

SMOKE_PROMPT = "Reply with the single word OK."


@dataclass(slots=True)
class RunCommand:
    """CLI input for running stories through their lifecycle to completion."""

    story_keys: tuple[str, ...] = ()
    project_root: Path | None = None
    dry_run: bool = False
    resume: bool = False
    auto_retry: bool | None = None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for routing and running several stories in order."""

    story_keys: tuple[str, ...]
    project_root: Path | None = None
    auto_retry: bool | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class EpicCommand:
    """CLI input for running the stories of one or more epics."""

    epic_ids: tuple[str, ...]
    project_root: Path | None = None
    dry_run: bool = False
    auto_retry: bool | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class WorkflowCommand:
    """CLI input for running one named workflow for a story."""

    workflow: str
    story_key: str
    project_root: Path | None = None


@dataclass(slots=True)
class RawCommand:
    """CLI input for sending an arbitrary prompt to the agent."""

    prompt: str
    model: str | None = None
    project_root: Path | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for showing story statuses and their next workflow."""

    story_keys: tuple[str, ...] = ()
    epic_id: str | None = None
    project_root: Path | None = None


@dataclass(slots=True)
class SmokeCommand:
    """CLI input for a direct agent round-trip check."""

    prompt: str = SMOKE_PROMPT
    expect_substring: str = "OK"
    command_template: str | None = None
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class CommandOutcome:
    """Final lines to print and the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


class StoryloopCliController:
    """Wires settings, status file, agent executor, and printer for each CLI command."""

    def __init__(
        self,
        *,
        executor_factory: ExecutorFactory | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.executor_factory = executor_factory or _cli_executor
        self.echo = echo

    def run(self, command: RunCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        status_file = StatusFile(settings.status_file)
        state_manager = StateManager(settings.project_root)

        if command.resume and command.story_keys:
            return CommandOutcome(["--resume continues the saved run and takes no story keys."], 1)
        if command.dry_run:
            if not command.story_keys:
                return CommandOutcome(["Dry run needs a story key."], 1)
            lifecycle = LifecycleExecutor(runner=_NoopRunner(), status_store=status_file)
            return self._dry_run(settings, lifecycle, list(command.story_keys))

        if not command.resume and not command.story_keys:
            return CommandOutcome(["Story key is required unless --resume is given."], 1)
        if command.resume and not state_manager.exists():
            return CommandOutcome(["No interrupted run to resume."], 1)

        auto_retry = settings.retry.auto_retry if command.auto_retry is None else command.auto_retry
        printer = self._printer(settings)
        with self._session(settings, printer) as runner:
            lifecycle = self._lifecycle(runner, printer, status_file, state_manager)
            if command.resume:
                return self._run_lifecycle(
                    runner,
                    printer,
                    lifecycle,
                    state_manager.load().story_key,
                    resume=True,
                    auto_retry=auto_retry,
                    max_retries=settings.retry.max_retries,
                )
            return self._run_stories(
                runner,
                printer,
                lifecycle,
                command.story_keys,
                auto_retry=auto_retry,
                max_retries=settings.retry.max_retries,
            )

    def queue(self, command: QueueCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        printer = self._printer(settings)
        with self._session(settings, printer) as runner:
            summary = self._queue_runner(settings, runner, printer, command).run(command.story_keys)
        return _queue_outcome(summary)

    def epic(self, command: EpicCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        status_file = StatusFile(settings.status_file)
        try:
            epic_ids = self._resolve_epics(status_file, command.epic_ids)
            if command.dry_run:
                story_keys = [
                    key for epic_id in epic_ids for key in status_file.get_epic_stories(epic_id)
                ]
                lifecycle = LifecycleExecutor(runner=_NoopRunner(), status_store=status_file)
                return self._dry_run(settings, lifecycle, story_keys)
        except StatusError as error:
            return CommandOutcome([f"Error reading epics: {error}"], 1)
        if not epic_ids:
            return CommandOutcome(["No active epics found."])

        auto_retry = settings.retry.auto_retry if command.auto_retry is None else command.auto_retry
        max_retries = (
            settings.retry.max_retries if command.max_retries is None else command.max_retries
        )
        printer = self._printer(settings)
        lines: list[str] = []
        with self._session(settings, printer) as runner:
            lifecycle = self._lifecycle(
                runner,
                printer,
                status_file,
                StateManager(settings.project_root),
            )
            for epic_id in epic_ids:
                try:
                    story_keys = status_file.get_epic_stories(epic_id)
                except StatusError as error:
                    lines.append(f"Error reading stories for epic {epic_id}: {error}")
                    return CommandOutcome(lines, 1)
                outcome = self._run_stories(
                    runner,
                    printer,
                    lifecycle,
                    story_keys,
                    auto_retry=auto_retry,
                    max_retries=max_retries,
                )
                lines.extend(outcome.lines)
                if outcome.exit_code != 0:
                    return CommandOutcome([*lines, f"Epic {epic_id} stopped."], outcome.exit_code)
                lines.append(f"Epic {epic_id} completed ({len(story_keys)} stories).")
        return CommandOutcome(lines)

    def workflow(self, command: WorkflowCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        if command.workflow not in settings.workflows:
            known = ", ".join(sorted(settings.workflows))
            return CommandOutcome([f"Unknown workflow {command.workflow!r}. Known: {known}."], 1)
        printer = self._printer(settings)
        with self._session(settings, printer) as runner:
            exit_code = runner.run_single(command.workflow, command.story_key)
        return CommandOutcome(exit_code=exit_code)

    def raw(self, command: RawCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        if command.model:
            settings.agent.default_model = command.model
        printer = self._printer(settings)
        with self._session(settings, printer) as runner:
            exit_code = runner.run_raw(command.prompt)
        return CommandOutcome(exit_code=exit_code)

    def status(self, command: StatusCommand) -> CommandOutcome:
        settings = self._settings(command.project_root)
        status_file = StatusFile(settings.status_file)
        try:
            if command.epic_id is not None:
                story_keys = status_file.get_epic_stories(command.epic_id)
            elif command.story_keys:
                story_keys = list(command.story_keys)
            else:
                story_keys = list(status_file.read())
            statuses = status_file.read()
        except StatusError as error:
            return CommandOutcome([f"Error: {error}"], 1)

        lines = [f"Status file: {settings.status_file}"]
        exit_code = 0
        for key in story_keys:
            value = statuses.get(key)
            if value is None:
                lines.append(f"- {key}: not found")
                exit_code = 1
                continue
            workflow, outcome = route(value)
            if outcome is RouteOutcome.CONTINUE:
                lines.append(f"- {key}: {value} -> {workflow}")
            elif outcome is RouteOutcome.COMPLETE:
                lines.append(f"- {key}: {value} (complete)")
            else:
                lines.append(f"- {key}: {value} (unknown status)")
        return CommandOutcome(lines, exit_code)

    def smoke(self, command: SmokeCommand) -> CommandOutcome:
        settings = Settings.from_env()
        if command.command_template:
            settings.agent.command_template = command.command_template
        settings.agent.timeout_seconds = command.timeout_seconds

        collected: list[str] = []
        printer = _CapturingPrinter(self._printer(settings), collected)
        with self._session(settings, printer) as runner:
            exit_code = runner.run_raw(command.prompt)

        stats = runner.last_stats
        found = any(command.expect_substring in text for text in collected)
        lines = [
            "Agent smoke check:",
            f"- command: {settings.agent.command_template}",
            f"- exit_code: {exit_code}",
            f"- expected substring {'found' if found else 'missing'}: {command.expect_substring!r}",
        ]
        if stats is not None:
            lines.append(
                f"- tools: {stats.tool_count}, tokens: {stats.input_tokens}/{stats.output_tokens}",
            )
        success = exit_code == 0 and found
        lines.append("Smoke check passed." if success else "Smoke check failed.")
        return CommandOutcome(lines, 0 if success else 1)

    def _settings(self, project_root: Path | None) -> Settings:
        settings = Settings.from_env(project_root=project_root)
        settings.validate()
        return settings

    def _printer(self, settings: Settings) -> ConsolePrinter:
        return ConsolePrinter(
            theme=Theme() if settings.output.color else PLAIN_THEME,
            truncate_lines=settings.output.truncate_lines,
            truncate_length=settings.output.truncate_length,
            echo=self.echo,
        )

    @contextmanager
    def _session(self, settings: Settings, printer: Printer) -> Iterator[WorkflowRunner]:
        cancel_event = threading.Event()
        progress: ProgressSink = LiveProgress() if settings.output.live_progress else NullProgress()
        runner = WorkflowRunner(
            executor=self.executor_factory(settings),
            printer=printer,
            settings=settings,
            progress=progress,
            cancel_event=cancel_event,
        )
        with _signal_handlers(cancel_event):
            if isinstance(progress, LiveProgress):
                with progress:
                    yield runner
            else:
                yield runner

    def _queue_runner(
        self,
        settings: Settings,
        runner: WorkflowRunner,
        printer: Printer,
        command: QueueCommand,
    ) -> QueueRunner:
        return QueueRunner(
            runner=runner,
            status_reader=StatusFile(settings.status_file),
            printer=printer,
            auto_retry=(
                settings.retry.auto_retry if command.auto_retry is None else command.auto_retry
            ),
            max_retries=(
                settings.retry.max_retries if command.max_retries is None else command.max_retries
            ),
        )

    def _lifecycle(
        self,
        runner: WorkflowRunner,
        printer: Printer,
        status_file: StatusFile,
        state_manager: StateManager,
    ) -> LifecycleExecutor:
        return LifecycleExecutor(
            runner=runner,
            status_store=status_file,
            state_manager=state_manager,
            on_progress=printer.step_start,
            on_step_end=printer.step_end,
        )

    def _run_stories(  # noqa: PLR0913
        self,
        runner: WorkflowRunner,
        printer: Printer,
        lifecycle: LifecycleExecutor,
        story_keys: Sequence[str],
        *,
        auto_retry: bool,
        max_retries: int,
    ) -> CommandOutcome:
        lines: list[str] = []
        for index, story_key in enumerate(story_keys, start=1):
            outcome = self._run_lifecycle(
                runner,
                printer,
                lifecycle,
                story_key,
                resume=False,
                auto_retry=auto_retry,
                max_retries=max_retries,
            )
            lines.extend(outcome.lines)
            if outcome.exit_code != 0:
                if index < len(story_keys):
                    lines.append(f"Stopped at {story_key}; later stories were not attempted.")
                return CommandOutcome(lines, outcome.exit_code)
        return CommandOutcome(lines)

    def _run_lifecycle(  # noqa: PLR0913
        self,
        runner: WorkflowRunner,
        printer: Printer,
        lifecycle: LifecycleExecutor,
        story_key: str,
        *,
        resume: bool,
        auto_retry: bool,
        max_retries: int,
    ) -> CommandOutcome:
        completed: list[StepResult] = []
        failures: list[LifecycleError] = []

        def attempt() -> int:
            nonlocal resume
            try:
                completed.extend(lifecycle.resume() if resume else lifecycle.execute(story_key))
            except LifecycleError as error:
                completed.extend(error.steps)
                failures.append(error)
                return error.exit_code
            finally:
                resume = False
            return 0

        started = time.monotonic()
        printer.cycle_header(story_key)
        if auto_retry:
            exit_code = run_with_rate_limit_retry(
                attempt,
                rate_limit_state=runner.rate_limit_state,
                detector=runner.detector,
                max_retries=max_retries,
                sleep=runner.sleep,
                printer=printer,
                cancel_event=runner.cancel_event,
            )
        else:
            exit_code = attempt()
        duration = time.monotonic() - started

        if exit_code != 0:
            failed_at = failures[-1].workflow if failures else "cancelled"
            printer.cycle_failed(story_key, failed_at, duration)
            lines = [str(failures[-1])] if failures else []
            return CommandOutcome(lines, exit_code)
        if not completed:
            return CommandOutcome([f"Story {story_key} is already complete, no action needed."])
        printer.cycle_summary(story_key, completed, duration)
        return CommandOutcome()

    def _dry_run(
        self,
        settings: Settings,
        lifecycle: LifecycleExecutor,
        story_keys: list[str],
    ) -> CommandOutcome:
        lines: list[str] = []
        total_steps = 0
        complete = 0
        for key in story_keys:
            try:
                steps = lifecycle.get_steps(key)
            except LifecycleError as error:
                return CommandOutcome([*lines, f"Error: {error}"], 1)
            lines.append(f"Story {key}:")
            if not steps:
                lines.append("  (already complete)")
                complete += 1
                continue
            for index, step in enumerate(steps, start=1):
                model = settings.model_for(step.workflow)
                model_info = f" ({model})" if model else ""
                lines.append(f"  {index}. {step.workflow}{model_info} -> {step.next_status.value}")
            total_steps += len(steps)
        summary = f"Total: {total_steps} workflows across {len(story_keys) - complete} stories"
        if complete:
            summary += f" ({complete} already complete)"
        lines.append(summary)
        return CommandOutcome(lines)

    def _resolve_epics(self, status_file: StatusFile, epic_ids: tuple[str, ...]) -> list[str]:
        if epic_ids == ("all",):
            return status_file.get_active_epics()
        return list(epic_ids)


class _NoopRunner:
    def run_single(
        self,
        workflow: str,
        story_key: str,
        *,
        step_index: int = 0,
        step_total: int = 0,
    ) -> int:
        raise RuntimeError("Dry run must not execute workflows")


class _CapturingPrinter:
    """Delegate to a printer while recording the agent's text and tool output."""

    def __init__(self, inner: Printer, collected: list[str]) -> None:
        self._inner = inner
        self._collected = collected

    def text(self, message: str) -> None:
        self._collected.append(message)
        self._inner.text(message)

    def tool_result(self, stdout: str, stderr: str) -> None:
        self._collected.append(stdout)
        self._inner.tool_result(stdout, stderr)

    def __getattr__(self, name: str) -> object:
        return getattr(self._inner, name)


def _cli_executor(settings: Settings) -> AgentExecutor:
    return CliAgentExecutor(
        command_template=settings.agent.command_template,
        timeout_seconds=settings.agent.timeout_seconds,
        graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
    )


def _queue_outcome(summary: QueueSummary) -> CommandOutcome:
    if summary.success:
        return CommandOutcome(exit_code=0)
    failed = next((result for result in summary.results if not result.success), None)
    if failed is None:
        return CommandOutcome(exit_code=summary.exit_code)
    return CommandOutcome(
        [f"Queue stopped at {failed.key} (failed at {failed.failed_at})."],
        summary.exit_code,
    )


@contextmanager
def _signal_handlers(cancel_event: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; stopping the current agent run", name)
        cancel_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
