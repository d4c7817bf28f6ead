"""Run a story through every remaining lifecycle workflow."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from storyloop.state import LifecycleState, StateManager
from storyloop.status import StatusError
from storyloop.workflow.models import FAILED_AT_ROUTING, FAILED_AT_STATUS, StepResult, StoryStatus
from storyloop.workflow.routing import LifecycleStep, steps_from

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]
StepEndCallback = Callable[[float, bool], None]


class StepRunner(Protocol):
    def run_single(
        self,
        workflow: str,
        story_key: str,
        *,
        step_index: int = 0,
        step_total: int = 0,
    ) -> int: ...


class StatusStore(Protocol):
    def get_story_status(self, story_key: str) -> str: ...

    def update_status(self, story_key: str, status: StoryStatus | str) -> None: ...


class LifecycleError(RuntimeError):
    """A lifecycle stopped before the story reached a terminal status."""

    def __init__(  # noqa: PLR0913
        self,
        story_key: str,
        workflow: str,
        exit_code: int,
        detail: str = "",
        *,
        steps: list[StepResult] | None = None,
    ) -> None:
        message = f"story {story_key} failed at {workflow} (exit code {exit_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.story_key = story_key
        self.workflow = workflow
        self.exit_code = exit_code
        self.steps = steps or []


class LifecycleExecutor:
    """Execute remaining lifecycle steps, writing each step's status after it succeeds.

    With a :class:`StateManager`, the position is saved before every step and
    cleared once the story completes, so an interrupted run can be resumed.
    """

    def __init__(
        self,
        *,
        runner: StepRunner,
        status_store: StatusStore,
        state_manager: StateManager | None = None,
        on_progress: ProgressCallback | None = None,
        on_step_end: StepEndCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.status_store = status_store
        self.state_manager = state_manager
        self.on_progress = on_progress
        self.on_step_end = on_step_end
        self._clock = clock

    def get_steps(self, story_key: str) -> tuple[LifecycleStep, ...]:
        """Steps that ``execute`` would run for the story's current status."""

        return self._resolve(story_key)[1]

    def execute(self, story_key: str) -> list[StepResult]:
        """Run remaining steps; an empty result means the story was already complete."""

        status, steps = self._resolve(story_key)
        return self._run_steps(story_key, status, steps, start_index=0)

    def resume(self) -> list[StepResult]:
        """Continue the run recorded by the state manager.

        Raises :class:`storyloop.state.NoStateError` when nothing was saved.
        """

        if self.state_manager is None:
            raise ValueError("Resume requires a state manager")
        state = self.state_manager.load()
        try:
            steps = steps_from(state.start_status)
        except ValueError as error:
            raise LifecycleError(state.story_key, FAILED_AT_ROUTING, 1, str(error)) from error
        logger.info(
            "Resuming story %s at step %d/%d",
            state.story_key,
            state.step_index + 1,
            state.total_steps,
        )
        return self._run_steps(
            state.story_key,
            state.start_status,
            steps,
            start_index=state.step_index,
        )

    def _resolve(self, story_key: str) -> tuple[str, tuple[LifecycleStep, ...]]:
        try:
            status = self.status_store.get_story_status(story_key)
        except StatusError as error:
            raise LifecycleError(story_key, FAILED_AT_STATUS, 1, str(error)) from error
        try:
            return status, steps_from(status)
        except ValueError as error:
            raise LifecycleError(story_key, FAILED_AT_ROUTING, 1, str(error)) from error

    def _run_steps(
        self,
        story_key: str,
        start_status: str,
        steps: tuple[LifecycleStep, ...],
        *,
        start_index: int,
    ) -> list[StepResult]:
        results: list[StepResult] = []
        total = len(steps)
        for index in range(start_index, total):
            step = steps[index]
            if self.state_manager is not None:
                self.state_manager.save(
                    LifecycleState(
                        story_key=story_key,
                        step_index=index,
                        total_steps=total,
                        start_status=start_status,
                    ),
                )
            if self.on_progress is not None:
                self.on_progress(index + 1, total, step.workflow)

            started = self._clock()
            exit_code = self.runner.run_single(
                step.workflow,
                story_key,
                step_index=index + 1,
                step_total=total,
            )
            result = StepResult(
                name=step.workflow,
                duration_seconds=self._clock() - started,
                success=exit_code == 0,
                exit_code=exit_code,
            )
            results.append(result)
            if self.on_step_end is not None:
                self.on_step_end(result.duration_seconds, result.success)
            if exit_code != 0:
                logger.error(
                    "Story %s failed at %s (exit code %d)",
                    story_key,
                    step.workflow,
                    exit_code,
                )
                raise LifecycleError(story_key, step.workflow, exit_code, steps=results)

            try:
                self.status_store.update_status(story_key, step.next_status)
            except StatusError as error:
                raise LifecycleError(
                    story_key,
                    FAILED_AT_STATUS,
                    1,
                    str(error),
                    steps=results,
                ) from error

        if self.state_manager is not None:
            self.state_manager.clear()
        return results
