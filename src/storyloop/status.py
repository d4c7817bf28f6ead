"""Sprint status file access.

The status file is YAML with a ``development_status`` mapping of story keys to
status values::

    development_status:
      epic-7: in-progress
      7-1-define-schema: done
      7-2-load-data: backlog

Reads parse the whole document with PyYAML. Writes rewrite only the value on
the story's line so comments and ordering survive.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml

from storyloop.workflow.models import StoryStatus
from storyloop.workflow.routing import TERMINAL_STATUSES, parse_status

logger = logging.getLogger(__name__)

STATUS_SECTION = "development_status"

_STORY_KEY_RE = re.compile(r"^(?P<epic>[A-Za-z0-9]+)-(?P<number>\d+)-")


class StatusError(RuntimeError):
    """Status file is missing, malformed, or lacks the requested story."""


class StatusFile:
    """Reader and writer for one sprint status file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> dict[str, str]:
        """Return the ``development_status`` mapping with values as strings."""

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise StatusError(f"failed to read sprint status {self.path}: {error}") from error
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as error:
            raise StatusError(f"failed to parse sprint status {self.path}: {error}") from error

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise StatusError(f"sprint status {self.path} is not a mapping")
        section = document.get(STATUS_SECTION) or {}
        if not isinstance(section, dict):
            raise StatusError(f"{STATUS_SECTION} in {self.path} is not a mapping")
        return {str(key): str(value) for key, value in section.items()}

    def get_story_status(self, story_key: str) -> str:
        statuses = self.read()
        try:
            return statuses[story_key]
        except KeyError:
            raise StatusError(f"story not found: {story_key}") from None

    def get_epic_stories(self, epic_id: str) -> list[str]:
        """Story keys of an epic (``{epic}-{n}-*``) sorted by story number."""

        stories: list[tuple[int, str]] = []
        for key in self.read():
            match = _STORY_KEY_RE.match(key)
            if match is None or match.group("epic") != epic_id:
                continue
            stories.append((int(match.group("number")), key))
        if not stories:
            raise StatusError(f"no stories found for epic: {epic_id}")
        stories.sort()
        return [key for _, key in stories]

    def get_active_epics(self) -> list[str]:
        """Epic ids that still have at least one story outside a terminal status."""

        active: set[str] = set()
        for key, value in self.read().items():
            match = _STORY_KEY_RE.match(key)
            if match is None:
                continue
            if parse_status(value) not in TERMINAL_STATUSES:
                active.add(match.group("epic"))
        return sorted(active, key=_epic_sort_key)

    def update_status(self, story_key: str, status: StoryStatus | str) -> None:
        """Rewrite one story's status in place, keeping the rest of the file."""

        new_status = parse_status(status)
        if new_status is None:
            raise StatusError(f"invalid status: {status}")

        try:
            lines = self.path.read_text(encoding="utf-8").splitlines(keepends=True)
        except OSError as error:
            raise StatusError(f"failed to read sprint status {self.path}: {error}") from error

        pattern = re.compile(
            r"^(?P<prefix>\s+[\"']?" + re.escape(story_key) + r"[\"']?\s*:\s*)"
            r"(?P<value>[^\s#]+)(?P<suffix>.*)$",
            re.DOTALL,
        )
        in_section = False
        for index, line in enumerate(lines):
            if line.lstrip().startswith("#"):
                continue
            if not line.startswith((" ", "\t")) and line.strip():
                in_section = line.split(":", 1)[0].strip() == STATUS_SECTION
                continue
            if not in_section:
                continue
            match = pattern.match(line)
            if match is None:
                continue
            lines[index] = f"{match.group('prefix')}{new_status.value}{match.group('suffix')}"
            _atomic_write(self.path, "".join(lines))
            logger.info("Status updated: story=%s status=%s", story_key, new_status.value)
            return

        raise StatusError(f"story not found: {story_key}")


def _atomic_write(path: Path, text: str) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as error:
        raise StatusError(f"failed to write sprint status {path}: {error}") from error


def _epic_sort_key(epic_id: str) -> tuple[int, int | str]:
    if epic_id.isdigit():
        return (0, int(epic_id))
    return (1, epic_id)
