"""Domain models for story routing and execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class StoryStatus(str, Enum):
    """Development status of a story as recorded in the sprint status file."""

    BACKLOG = "backlog"
    READY_FOR_DEV = "ready-for-dev"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"
    DEFERRED = "deferred"
    OPTIONAL = "optional"


class RouteOutcome(str, Enum):
    """Routing decision for one story status."""

    CONTINUE = "continue"
    COMPLETE = "complete"
    UNROUTABLE = "unroutable"


# Failure stage tags that are not workflow names.
FAILED_AT_STATUS = "status"
FAILED_AT_ROUTING = "routing"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one workflow step."""

    name: str
    duration_seconds: float
    success: bool
    exit_code: int = 0


@dataclass(frozen=True, slots=True)
class StoryResult:
    """Outcome of processing one story in a queue or epic run."""

    key: str
    duration_seconds: float
    success: bool
    failed_at: str | None = None
    skipped: bool = False


@dataclass(frozen=True, slots=True)
class QueueSummary:
    """Aggregate result of a queue run."""

    story_keys: tuple[str, ...]
    results: tuple[StoryResult, ...] = field(default_factory=tuple)
    total_duration_seconds: float = 0.0
    exit_code: int = 0

    @property
    def completed(self) -> int:
        return sum(1 for result in self.results if result.success and not result.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.results if result.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def not_attempted(self) -> tuple[str, ...]:
        processed = {result.key for result in self.results}
        return tuple(key for key in self.story_keys if key not in processed)

    @property
    def success(self) -> bool:
        return self.exit_code == 0
