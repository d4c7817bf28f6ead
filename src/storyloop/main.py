"""CLI entrypoint for storyloop."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from storyloop import __version__
from storyloop.controllers import (
    SMOKE_PROMPT,
    CommandOutcome,
    EpicCommand,
    QueueCommand,
    RawCommand,
    RunCommand,
    SmokeCommand,
    StatusCommand,
    StoryloopCliController,
    WorkflowCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StoryloopCliController()

project_root_option = click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help=(
        "Project directory holding the sprint status file. "
        "Defaults to STORYLOOP_PROJECT_ROOT or the current directory."
    ),
)
auto_retry_option = click.option(
    "--auto-retry/--no-auto-retry",
    default=None,
    help="Retry a story after a rate limit. Defaults to STORYLOOP_AUTO_RETRY.",
)
max_retries_option = click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries per story when --auto-retry is on. Defaults to STORYLOOP_MAX_RETRIES.",
)


@click.group()
@click.version_option(version=__version__, prog_name="storyloop")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def storyloop(verbose: bool) -> None:
    """Drive an AI coding agent through story workflows."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@storyloop.command("run")
@click.argument("story_keys", nargs=-1)
@project_root_option
@click.option("--dry-run", is_flag=True, help="Show the remaining workflows without running them.")
@click.option("--resume", is_flag=True, help="Continue the last interrupted lifecycle run.")
@auto_retry_option
def run_story(
    story_keys: tuple[str, ...],
    project_root: Path | None,
    dry_run: bool,
    resume: bool,
    auto_retry: bool | None,
) -> None:
    """Run each story's lifecycle from its current status to done.

    - backlog: create-story, dev-story, code-review, git-commit
    - ready-for-dev / in-progress: dev-story, code-review, git-commit
    - review: code-review, git-commit
    - done: nothing to do

    The status file is updated after each successful workflow. Several stories
    run in order; complete ones are skipped and the first failure stops the run.
    """

    _finish(
        lambda: CONTROLLER.run(
            RunCommand(
                story_keys=story_keys,
                project_root=project_root,
                dry_run=dry_run,
                resume=resume,
                auto_retry=auto_retry,
            ),
        ),
    )


@storyloop.command("queue")
@click.argument("story_keys", nargs=-1, required=True)
@project_root_option
@auto_retry_option
@max_retries_option
def queue_stories(
    story_keys: tuple[str, ...],
    project_root: Path | None,
    auto_retry: bool | None,
    max_retries: int | None,
) -> None:
    """Run the next workflow for each story in order, stopping on the first failure.

    Stories that are already done are skipped.
    """

    _finish(
        lambda: CONTROLLER.queue(
            QueueCommand(
                story_keys=story_keys,
                project_root=project_root,
                auto_retry=auto_retry,
                max_retries=max_retries,
            ),
        ),
    )


@storyloop.command("epic")
@click.argument("epic_ids", nargs=-1, required=True)
@project_root_option
@click.option("--dry-run", is_flag=True, help="Show planned workflows without running them.")
@auto_retry_option
@max_retries_option
def run_epic(
    epic_ids: tuple[str, ...],
    project_root: Path | None,
    dry_run: bool,
    auto_retry: bool | None,
    max_retries: int | None,
) -> None:
    """Run the stories of one or more epics (`{epic}-{n}-*`) in story-number order.

    Pass `all` to process every epic that still has unfinished stories.
    """

    _finish(
        lambda: CONTROLLER.epic(
            EpicCommand(
                epic_ids=epic_ids,
                project_root=project_root,
                dry_run=dry_run,
                auto_retry=auto_retry,
                max_retries=max_retries,
            ),
        ),
    )


@storyloop.command("workflow")
@click.argument("workflow")
@click.argument("story_key")
@project_root_option
def run_workflow(workflow: str, story_key: str, project_root: Path | None) -> None:
    """Run one named workflow (for example `dev-story`) for a story."""

    _finish(
        lambda: CONTROLLER.workflow(
            WorkflowCommand(workflow=workflow, story_key=story_key, project_root=project_root),
        ),
    )


@storyloop.command("raw")
@click.argument("prompt")
@click.option("--model", default=None, help="Model passed to the agent CLI.")
@project_root_option
def run_raw(prompt: str, model: str | None, project_root: Path | None) -> None:
    """Send an arbitrary prompt to the agent."""

    _finish(
        lambda: CONTROLLER.raw(RawCommand(prompt=prompt, model=model, project_root=project_root)),
    )


@storyloop.command("status")
@click.argument("story_keys", nargs=-1)
@click.option("--epic", "epic_id", default=None, help="Show the stories of one epic.")
@project_root_option
def show_status(
    story_keys: tuple[str, ...],
    epic_id: str | None,
    project_root: Path | None,
) -> None:
    """Show story statuses and the workflow each would run next."""

    _finish(
        lambda: CONTROLLER.status(
            StatusCommand(story_keys=story_keys, epic_id=epic_id, project_root=project_root),
        ),
    )


@storyloop.command("smoke")
@click.option(
    "--prompt",
    default=SMOKE_PROMPT,
    show_default=True,
    help="Prompt sent to the agent.",
)
@click.option(
    "--expect-substring",
    default="OK",
    show_default=True,
    help="Text the agent output must contain.",
)
@click.option(
    "--agent-command",
    "command_template",
    default=None,
    help="Agent command template with {prompt}. Defaults to STORYLOOP_AGENT_COMMAND.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=120.0,
    show_default=True,
)
def smoke(
    prompt: str,
    expect_substring: str,
    command_template: str | None,
    timeout_seconds: float,
) -> None:
    """Run one prompt through the agent and check its output."""

    result = _call(
        lambda: CONTROLLER.smoke(
            SmokeCommand(
                prompt=prompt,
                expect_substring=expect_substring,
                command_template=command_template,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise click.ClickException("Agent smoke check failed.")


def _call(action: Callable[[], CommandOutcome]) -> CommandOutcome:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(f"Configuration error: {error}") from error


def _finish(action: Callable[[], CommandOutcome]) -> None:
    outcome = _call(action)
    _emit_lines(outcome.lines)
    if outcome.exit_code != 0:
        raise SystemExit(outcome.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    storyloop()
