"""Runtime configuration for agent workflows."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.agent.executor import DEFAULT_COMMAND_TEMPLATE

DEFAULT_STATUS_PATH = Path("_bmad-output/implementation-artifacts/sprint-status.yaml")


@dataclass(slots=True)
class WorkflowSettings:
    """Prompt template and model for one workflow."""

    prompt_template: str
    model: str = ""


@dataclass(slots=True)
class AgentSettings:
    """How the agent CLI is invoked."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    default_model: str = ""
    timeout_seconds: float | None = None
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class OutputSettings:
    """Terminal output settings."""

    truncate_lines: int = 20
    truncate_length: int = 60
    color: bool = True
    live_progress: bool = False


@dataclass(slots=True)
class RetrySettings:
    """Queue-level retry after rate limits."""

    auto_retry: bool = False
    max_retries: int = 10


def default_workflows() -> dict[str, WorkflowSettings]:
    return {
        "create-story": WorkflowSettings(
            prompt_template=(
                "/bmad:bmm:workflows:create-story - Create story: {story_key}. "
                "Do not ask questions."
            ),
        ),
        "dev-story": WorkflowSettings(
            prompt_template=(
                "/bmad:bmm:workflows:dev-story - Work on story: {story_key}. "
                "Complete all tasks. Run tests after each implementation. "
                "Do not ask clarifying questions - use best judgment based on existing patterns."
            ),
        ),
        "code-review": WorkflowSettings(
            prompt_template=(
                "/bmad:bmm:workflows:code-review - Review story: {story_key}. "
                "When presenting fix options, always choose to auto-fix all issues immediately. "
                "Do not wait for user input."
            ),
        ),
        "git-commit": WorkflowSettings(
            prompt_template=(
                "Commit all changes for story {story_key} with a descriptive commit message "
                "following conventional commits format. Then push to the current branch. "
                "Do not ask questions."
            ),
        ),
    }


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_root: Path = Path(".")
    status_path: Path = DEFAULT_STATUS_PATH
    workflows: dict[str, WorkflowSettings] = field(default_factory=default_workflows)
    agent: AgentSettings = field(default_factory=AgentSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> Settings:
        """Load settings from ``STORYLOOP_*`` environment variables."""

        workflows = default_workflows()
        for name, workflow in workflows.items():
            env_name = _workflow_env_name(name)
            workflow.prompt_template = os.getenv(f"{env_name}_PROMPT", workflow.prompt_template)
            workflow.model = os.getenv(f"{env_name}_MODEL", workflow.model)

        timeout_raw = os.getenv("STORYLOOP_AGENT_TIMEOUT_SECONDS", "").strip()

        return cls(
            project_root=project_root
            or Path(os.getenv("STORYLOOP_PROJECT_ROOT", ".")),
            status_path=Path(os.getenv("STORYLOOP_STATUS_PATH", str(DEFAULT_STATUS_PATH))),
            workflows=workflows,
            agent=AgentSettings(
                command_template=os.getenv("STORYLOOP_AGENT_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                default_model=os.getenv("STORYLOOP_MODEL", ""),
                timeout_seconds=float(timeout_raw) if timeout_raw else None,
                graceful_shutdown_seconds=float(
                    os.getenv("STORYLOOP_AGENT_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
            ),
            output=OutputSettings(
                truncate_lines=int(os.getenv("STORYLOOP_TRUNCATE_LINES", "20")),
                truncate_length=int(os.getenv("STORYLOOP_TRUNCATE_LENGTH", "60")),
                color=not os.getenv("NO_COLOR")
                and _env_bool("STORYLOOP_COLOR", default=True),
                live_progress=_env_bool("STORYLOOP_LIVE_PROGRESS", default=False),
            ),
            retry=RetrySettings(
                auto_retry=_env_bool("STORYLOOP_AUTO_RETRY", default=False),
                max_retries=int(os.getenv("STORYLOOP_MAX_RETRIES", "10")),
            ),
        )

    @property
    def status_file(self) -> Path:
        if self.status_path.is_absolute():
            return self.status_path
        return self.project_root / self.status_path

    def prompt_for(self, workflow: str, story_key: str) -> str:
        """Expand the workflow's prompt template for a story."""

        settings = self.workflows.get(workflow)
        if settings is None:
            raise ValueError(f"Unknown workflow: {workflow!r}")
        try:
            return settings.prompt_template.format(story_key=story_key)
        except (KeyError, IndexError, ValueError) as error:
            raise ValueError(
                f"Invalid prompt template for workflow {workflow!r}: {error}",
            ) from error

    def model_for(self, workflow: str) -> str:
        settings = self.workflows.get(workflow)
        if settings is not None and settings.model:
            return settings.model
        return self.agent.default_model

    def validate(self) -> None:
        """Raise configuration error for settings that cannot work."""

        if "{prompt}" not in self.agent.command_template:
            raise ValueError("STORYLOOP_AGENT_COMMAND must include {prompt}.")
        if self.agent.timeout_seconds is not None and self.agent.timeout_seconds <= 0:
            raise ValueError("STORYLOOP_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.retry.max_retries < 0:
            raise ValueError("STORYLOOP_MAX_RETRIES must be >= 0.")


def _workflow_env_name(name: str) -> str:
    return "STORYLOOP_WORKFLOW_" + name.upper().replace("-", "_")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
