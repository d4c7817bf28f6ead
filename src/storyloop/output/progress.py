"""Best-effort live progress view fed by the workflow runner.

The runner publishes :class:`ProgressUpdate` snapshots and never waits for them
to be rendered. :class:`LiveProgress` renders them from a daemon thread;
updates are dropped when the renderer falls behind.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import click

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Snapshot of one execution's progress."""

    label: str
    elapsed_seconds: float
    step_index: int = 0
    step_total: int = 0
    model: str = ""
    current_tool: str = ""
    tool_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    rate_limited_until: datetime | None = None
    done: bool = False
    success: bool = True


class ProgressSink(Protocol):
    def publish(self, update: ProgressUpdate) -> None: ...


class NullProgress:
    """Sink that discards updates."""

    def publish(self, update: ProgressUpdate) -> None:
        return None


class LiveProgress:
    """Render progress updates on a background thread."""

    def __init__(
        self,
        *,
        render: Callable[[ProgressUpdate], None] | None = None,
        max_pending: int = 64,
    ) -> None:
        self._render = render or render_status_line
        self._queue: queue.Queue[ProgressUpdate] = queue.Queue(maxsize=max_pending)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.dropped = 0

    def __enter__(self) -> LiveProgress:
        self.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.stop()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="storyloop-progress")
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def publish(self, update: ProgressUpdate) -> None:
        try:
            self._queue.put_nowait(update)
        except queue.Full:
            self.dropped += 1

    def _loop(self) -> None:
        while not self._stop.is_set() or not self._queue.empty():
            try:
                update = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._render(update)
            except Exception:  # noqa: BLE001
                logger.debug("Progress render failed", exc_info=True)


def render_status_line(update: ProgressUpdate) -> None:
    """Write a compact one-line status to stderr."""

    parts = [update.label]
    if update.step_total:
        parts.insert(0, f"[{update.step_index}/{update.step_total}]")
    if update.rate_limited_until is not None:
        parts.append(f"rate limited until {update.rate_limited_until:%H:%M}")
    elif update.current_tool:
        parts.append(f"running {update.current_tool}")
    elif update.done:
        parts.append("done" if update.success else "failed")
    parts.append(f"tools={update.tool_count}")
    parts.append(f"tokens={update.input_tokens}/{update.output_tokens}")
    parts.append(f"{update.elapsed_seconds:.0f}s")
    click.echo(" | ".join(parts), err=True)
