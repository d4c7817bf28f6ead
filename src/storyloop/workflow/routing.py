"""Status routing table and lifecycle step resolution."""

from __future__ import annotations

from dataclasses import dataclass

from storyloop.workflow.models import RouteOutcome, StoryStatus

CREATE_STORY = "create-story"
DEV_STORY = "dev-story"
CODE_REVIEW = "code-review"
GIT_COMMIT = "git-commit"

TERMINAL_STATUSES = frozenset({StoryStatus.DONE, StoryStatus.DEFERRED, StoryStatus.OPTIONAL})

ROUTING_TABLE: dict[StoryStatus, str] = {
    StoryStatus.BACKLOG: CREATE_STORY,
    StoryStatus.READY_FOR_DEV: DEV_STORY,
    StoryStatus.IN_PROGRESS: DEV_STORY,
    StoryStatus.REVIEW: CODE_REVIEW,
}


@dataclass(frozen=True, slots=True)
class LifecycleStep:
    """One workflow in the story lifecycle and the status written after it succeeds."""

    workflow: str
    next_status: StoryStatus


LIFECYCLE_STEPS: tuple[LifecycleStep, ...] = (
    LifecycleStep(CREATE_STORY, StoryStatus.READY_FOR_DEV),
    LifecycleStep(DEV_STORY, StoryStatus.REVIEW),
    LifecycleStep(CODE_REVIEW, StoryStatus.DONE),
    LifecycleStep(GIT_COMMIT, StoryStatus.DONE),
)


def parse_status(status: str | StoryStatus) -> StoryStatus | None:
    """Return the known status for ``status`` or ``None`` when it is not recognized."""

    if isinstance(status, StoryStatus):
        return status
    try:
        return StoryStatus(status.strip())
    except ValueError:
        return None


def route(status: str | StoryStatus) -> tuple[str | None, RouteOutcome]:
    """Map a story status to the next workflow.

    Terminal statuses return ``(None, COMPLETE)``. Statuses missing from the
    table return ``(None, UNROUTABLE)`` and never fall back to a workflow.
    """

    known = parse_status(status)
    if known is None:
        return None, RouteOutcome.UNROUTABLE
    if known in TERMINAL_STATUSES:
        return None, RouteOutcome.COMPLETE
    workflow = ROUTING_TABLE.get(known)
    if workflow is None:
        return None, RouteOutcome.UNROUTABLE
    return workflow, RouteOutcome.CONTINUE


def steps_from(status: str | StoryStatus) -> tuple[LifecycleStep, ...]:
    """Remaining lifecycle steps for a story, starting at its routed workflow.

    Raises ``ValueError`` for statuses the routing table does not know.
    """

    workflow, outcome = route(status)
    if outcome is RouteOutcome.COMPLETE:
        return ()
    if outcome is RouteOutcome.UNROUTABLE:
        raise ValueError(f"Unknown story status: {status!r}")
    for index, step in enumerate(LIFECYCLE_STEPS):
        if step.workflow == workflow:
            return LIFECYCLE_STEPS[index:]
    raise ValueError(f"Workflow {workflow!r} is not part of the lifecycle")
