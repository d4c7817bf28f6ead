"""Sequential processing of many stories with status-based routing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import NamedTuple, Protocol

from storyloop.output.printer import Printer
from storyloop.status import StatusError
from storyloop.workflow.models import (
    FAILED_AT_ROUTING,
    FAILED_AT_STATUS,
    QueueSummary,
    RouteOutcome,
    StoryResult,
)
from storyloop.workflow.retry import run_with_rate_limit_retry
from storyloop.workflow.routing import route
from storyloop.workflow.runner import WorkflowRunner

logger = logging.getLogger(__name__)


class StatusReader(Protocol):
    def get_story_status(self, story_key: str) -> str: ...


class QueueRunner:
    """Route each story by its status and run the next workflow, stopping on the first failure."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        runner: WorkflowRunner,
        status_reader: StatusReader,
        printer: Printer,
        auto_retry: bool = False,
        max_retries: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.status_reader = status_reader
        self.printer = printer
        self.auto_retry = auto_retry
        self.max_retries = max_retries
        self._clock = clock

    def run(self, story_keys: Sequence[str]) -> QueueSummary:
        keys = tuple(story_keys)
        queue_started = self._clock()
        results: list[StoryResult] = []
        exit_code = 0

        self.printer.queue_header(keys)
        for index, story_key in enumerate(keys, start=1):
            self.printer.queue_story_start(index, len(keys), story_key)
            result = self._process(story_key)
            results.append(result.story)
            if result.exit_code != 0:
                exit_code = result.exit_code
                break

        summary = QueueSummary(
            story_keys=keys,
            results=tuple(results),
            total_duration_seconds=self._clock() - queue_started,
            exit_code=exit_code,
        )
        self.printer.queue_summary(summary)
        logger.info(
            "Queue finished: completed=%d skipped=%d failed=%d not_attempted=%d exit_code=%d",
            summary.completed,
            summary.skipped,
            summary.failed,
            len(summary.not_attempted),
            exit_code,
        )
        return summary

    def _process(self, story_key: str) -> _Processed:
        started = self._clock()

        try:
            status = self.status_reader.get_story_status(story_key)
        except StatusError as error:
            logger.error("Status lookup failed for %s: %s", story_key, error)
            self.printer.error(str(error))
            return _Processed.failure(story_key, self._clock() - started, FAILED_AT_STATUS, 1)

        workflow, outcome = route(status)
        if outcome is RouteOutcome.COMPLETE:
            self.printer.queue_story_skipped(story_key)
            return _Processed(
                StoryResult(
                    key=story_key,
                    duration_seconds=self._clock() - started,
                    success=True,
                    skipped=True,
                ),
                0,
            )
        if outcome is RouteOutcome.UNROUTABLE or workflow is None:
            logger.error("Unknown status for %s: %r", story_key, status)
            self.printer.error(f"unknown status value: {status}")
            return _Processed.failure(story_key, self._clock() - started, FAILED_AT_ROUTING, 1)

        exit_code = self._run_workflow(workflow, story_key)
        duration = self._clock() - started
        if exit_code != 0:
            return _Processed.failure(story_key, duration, workflow, exit_code)
        return _Processed(StoryResult(key=story_key, duration_seconds=duration, success=True), 0)

    def _run_workflow(self, workflow: str, story_key: str) -> int:
        if not self.auto_retry:
            return self.runner.run_single(workflow, story_key)
        return run_with_rate_limit_retry(
            lambda: self.runner.run_single(workflow, story_key),
            rate_limit_state=self.runner.rate_limit_state,
            detector=self.runner.detector,
            max_retries=self.max_retries,
            sleep=self.runner.sleep,
            printer=self.printer,
            cancel_event=self.runner.cancel_event,
        )


class _Processed(NamedTuple):
    story: StoryResult
    exit_code: int

    @classmethod
    def failure(cls, story_key: str, duration: float, failed_at: str, exit_code: int) -> _Processed:
        return cls(
            StoryResult(
                key=story_key,
                duration_seconds=duration,
                success=False,
                failed_at=failed_at,
            ),
            exit_code,
        )
