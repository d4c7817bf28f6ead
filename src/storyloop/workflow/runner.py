"""Drive one agent execution and route its events to the printer."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from storyloop.agent.events import Event
from storyloop.agent.executor import EXIT_CANCELLED, AgentExecutor, ExecutorError
from storyloop.config import Settings
from storyloop.output.printer import Printer
from storyloop.output.progress import NullProgress, ProgressSink, ProgressUpdate
from storyloop.workflow.correlator import ToolCorrelator
from storyloop.workflow.ratelimit import RateLimitDetector, RateLimitInfo, RateLimitState

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class ExecutionStats:
    """Counters accumulated over one execution."""

    input_tokens: int = 0
    output_tokens: int = 0
    tool_count: int = 0
    current_tool: str = ""
    first_response_seconds: float | None = None
    rate_limit_pauses: int = 0

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens


@dataclass(slots=True)
class _Execution:
    label: str
    model: str
    step_index: int
    step_total: int
    started: float
    stats: ExecutionStats


def estimate_tokens(text: str) -> int:
    """Rough token count for text the agent did not report usage for."""

    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


class WorkflowRunner:
    """Runs workflows for stories through an :class:`AgentExecutor`."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: AgentExecutor,
        printer: Printer,
        settings: Settings,
        detector: RateLimitDetector | None = None,
        progress: ProgressSink | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.printer = printer
        self.settings = settings
        self.detector = detector or RateLimitDetector()
        self.progress = progress or NullProgress()
        self.cancel_event = cancel_event or threading.Event()
        self.correlator = ToolCorrelator()
        self.rate_limit_state = RateLimitState()
        self.last_stats: ExecutionStats | None = None
        self.sleep = sleep or self.pause
        self._clock = clock

    def run_single(
        self,
        workflow: str,
        story_key: str,
        *,
        step_index: int = 0,
        step_total: int = 0,
    ) -> int:
        """Run one configured workflow for a story and return the agent exit code."""

        try:
            prompt = self.settings.prompt_for(workflow, story_key)
        except ValueError as error:
            self.printer.error(str(error))
            return 1
        return self.execute(
            prompt,
            label=f"{workflow}: {story_key}",
            model=self.settings.model_for(workflow),
            step_index=step_index,
            step_total=step_total,
        )

    def run_raw(self, prompt: str) -> int:
        """Run an arbitrary prompt without template expansion."""

        return self.execute(prompt, label="raw", model=self.settings.agent.default_model)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def execute(
        self,
        prompt: str,
        *,
        label: str,
        model: str = "",
        step_index: int = 0,
        step_total: int = 0,
    ) -> int:
        self.correlator.reset()
        self.rate_limit_state.clear()
        if self.cancelled:
            return EXIT_CANCELLED

        execution = _Execution(
            label=label,
            model=model,
            step_index=step_index,
            step_total=step_total,
            started=self._clock(),
            stats=ExecutionStats(),
        )
        self.last_stats = execution.stats
        self.printer.command_header(label, prompt)
        self._publish(execution)

        try:
            exit_code = self.executor.execute(
                prompt,
                lambda event: self._handle(execution, event),
                model,
                on_stderr=self._observe_stderr,
                cancel_event=self.cancel_event,
            )
        except ExecutorError as error:
            logger.error("Agent execution failed for %s: %s", label, error)
            self.printer.error(f"executing agent: {error}")
            exit_code = 1

        self._flush_pending_tools()
        if self.cancelled:
            exit_code = EXIT_CANCELLED

        duration = self._clock() - execution.started
        self._publish(execution, done=True, success=exit_code == 0)
        self.printer.command_footer(duration, exit_code == 0, exit_code)
        logger.info(
            "Execution finished: label=%s exit_code=%d duration=%.1fs tools=%d tokens=%d/%d",
            label,
            exit_code,
            duration,
            execution.stats.tool_count,
            execution.stats.input_tokens,
            execution.stats.output_tokens,
        )
        return exit_code

    def _handle(self, execution: _Execution, event: Event) -> None:
        if self.cancelled:
            return

        stats = execution.stats
        if event.input_tokens > 0 or event.output_tokens > 0:
            stats.add_tokens(event.input_tokens, event.output_tokens)
        elif event.is_text:
            stats.add_tokens(0, estimate_tokens(event.text))

        if stats.first_response_seconds is None and (event.is_text or event.is_tool_use):
            stats.first_response_seconds = self._clock() - execution.started

        if event.is_tool_use:
            stats.current_tool = event.tool_name
            stats.tool_count += 1
        elif event.is_tool_result:
            stats.current_tool = ""

        self._dispatch(event)
        self._publish(execution)

        if event.is_tool_result and event.tool_stderr:
            info = self._scan_for_rate_limit(event.tool_stderr)
            if info is not None:
                self._pause_for_rate_limit(execution, info)

    def _dispatch(self, event: Event) -> None:
        if event.session_started:
            self.printer.session_start()
        elif event.is_text:
            self._flush_pending_tools()
            self.printer.text(event.text)
        elif event.is_tool_use:
            self.correlator.add_tool_use(event.tool_id, event)
        elif event.is_tool_result:
            tool_use, found = self.correlator.match_result(event.tool_use_id)
            if found and tool_use is not None:
                self.printer.tool_use(tool_use)
            self.printer.tool_result(event.tool_stdout, event.tool_stderr)
        elif event.session_complete:
            self._flush_pending_tools()
            self.printer.session_end(
                (event.duration_ms or 0) / 1000,
                not event.is_error,
            )

    def _flush_pending_tools(self) -> None:
        for pending in self.correlator.flush():
            self.printer.tool_use(pending.params)

    def _scan_for_rate_limit(self, text: str) -> RateLimitInfo | None:
        for line in text.splitlines():
            info = self.detector.check_line(line)
            if info.is_rate_limit:
                return info
        return None

    def _observe_stderr(self, line: str) -> None:
        info = self.detector.check_line(line)
        if info.is_rate_limit:
            logger.warning("Rate limit reported by agent: %s", info.raw_message)
            self.rate_limit_state.mark_detected(info)

    def _pause_for_rate_limit(self, execution: _Execution, info: RateLimitInfo) -> None:
        self.rate_limit_state.mark_detected(info)
        wait = self.detector.wait_time(info).total_seconds()
        execution.stats.rate_limit_pauses += 1
        logger.warning("Rate limit detected; pausing %.0fs: %s", wait, info.raw_message)
        self.printer.rate_limit_wait(wait, info.reset_time)
        self._publish(execution, rate_limited_until=info.reset_time)
        self.sleep(wait)
        execution.stats.current_tool = ""

    def _publish(self, execution: _Execution, **overrides: object) -> None:
        stats = execution.stats
        update = ProgressUpdate(
            label=execution.label,
            elapsed_seconds=self._clock() - execution.started,
            step_index=execution.step_index,
            step_total=execution.step_total,
            model=execution.model,
            current_tool=stats.current_tool,
            tool_count=stats.tool_count,
            input_tokens=stats.input_tokens,
            output_tokens=stats.output_tokens,
        )
        if overrides:
            update = replace(update, **overrides)  # type: ignore[arg-type]
        self.progress.publish(update)

    def pause(self, seconds: float) -> None:
        """Sleep up to ``seconds``, returning early when cancelled."""

        self.cancel_event.wait(timeout=max(0.0, seconds))

