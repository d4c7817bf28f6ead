"""Subprocess execution of the CLI coding agent."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from typing import Protocol

from storyloop.agent.events import Event
from storyloop.agent.parser import StreamParser

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]
StderrHandler = Callable[[str], None]

EXIT_TIMEOUT = 124
EXIT_CANCELLED = 130

DEFAULT_COMMAND_TEMPLATE = (
    "claude --dangerously-skip-permissions -p {prompt} --output-format stream-json --verbose"
)


class ExecutorError(RuntimeError):
    """Agent execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentExecutor(Protocol):
    """Runs one agent invocation and delivers its events synchronously."""

    def execute(
        self,
        prompt: str,
        on_event: EventHandler | None,
        model: str = "",
        *,
        on_stderr: StderrHandler | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Run the agent, call ``on_event`` per event in order, return its exit code."""


class CliAgentExecutor:
    """Spawn the agent CLI and stream its stdout through :class:`StreamParser`."""

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        timeout_seconds: float | None = None,
        graceful_shutdown_seconds: float = 5.0,
        parser_factory: Callable[[], StreamParser] = StreamParser,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.parser_factory = parser_factory
        self.env = env

    def execute(
        self,
        prompt: str,
        on_event: EventHandler | None,
        model: str = "",
        *,
        on_stderr: StderrHandler | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        argv = build_run_args(command_template=self.command_template, prompt=prompt, model=model)
        env = dict(self.env) if self.env is not None else os.environ.copy()
        logger.debug("Starting agent: %s", argv[0])

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ExecutorError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise ExecutorError(f"Agent failed to start: {error}", transient=True) from error

        finished = threading.Event()
        stop_reason: list[str] = []
        stderr_thread = threading.Thread(
            target=_pump_stderr,
            args=(process, on_stderr),
            daemon=True,
            name="agent-stderr",
        )
        watcher = threading.Thread(
            target=self._watch,
            args=(process, cancel_event, finished, stop_reason),
            daemon=True,
            name="agent-watchdog",
        )
        stderr_thread.start()
        watcher.start()

        parser = self.parser_factory()
        try:
            for event in parser.parse(process.stdout or ()):
                if cancel_event is not None and cancel_event.is_set():
                    # Keep draining so the process can exit on a closed pipe.
                    continue
                if on_event is not None:
                    on_event(event)
            returncode = process.wait()
        except BaseException:
            _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
            raise
        finally:
            finished.set()
            watcher.join(timeout=self.graceful_shutdown_seconds + 5)
            stderr_thread.join(timeout=2)

        if stop_reason:
            logger.info("Agent stopped early: reason=%s", stop_reason[0])
            return EXIT_TIMEOUT if stop_reason[0] == "timeout" else EXIT_CANCELLED
        if cancel_event is not None and cancel_event.is_set():
            return EXIT_CANCELLED
        return returncode

    def _watch(
        self,
        process: subprocess.Popen[str],
        cancel_event: threading.Event | None,
        finished: threading.Event,
        stop_reason: list[str],
    ) -> None:
        started = time.monotonic()
        while not finished.wait(0.1):
            if cancel_event is not None and cancel_event.is_set():
                stop_reason.append("cancelled")
                _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
                return
            if (
                self.timeout_seconds is not None
                and time.monotonic() - started >= self.timeout_seconds
            ):
                stop_reason.append("timeout")
                _terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
                return


def build_run_args(*, command_template: str, prompt: str, model: str) -> list[str]:
    """Render the command template into argv.

    ``{prompt}`` is required. When the template has no ``{model}`` placeholder
    a non-empty model is appended as ``--model <model>``.
    """

    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise ExecutorError("Agent command template must include {prompt}.", transient=False)

    try:
        rendered = stripped.format(prompt=shlex.quote(prompt), model=shlex.quote(model))
    except (KeyError, IndexError) as error:
        raise ExecutorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Agent command template rendered empty command.", transient=False)
    if model and "{model}" not in stripped:
        argv.extend(["--model", model])
    return argv


def _pump_stderr(process: subprocess.Popen[str], on_stderr: StderrHandler | None) -> None:
    if process.stderr is None:
        return
    for line in process.stderr:
        text = line.rstrip("\r\n")
        if not text:
            continue
        logger.debug("agent stderr: %s", text)
        if on_stderr is not None:
            on_stderr(text)


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, 0.1))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
