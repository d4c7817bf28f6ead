"""Line-oriented stream-json parser."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from storyloop.agent.events import Event, StreamDecodeError, event_from_line

logger = logging.getLogger(__name__)

MAX_LINE_CHARS = 10 * 1024 * 1024


class StreamParser:
    """Turn agent stdout lines into normalized events, skipping malformed lines."""

    def __init__(self, *, max_line_chars: int = MAX_LINE_CHARS) -> None:
        self.max_line_chars = max_line_chars
        self.skipped_lines = 0

    def parse(self, lines: Iterable[str]) -> Iterator[Event]:
        for line_no, line in enumerate(lines, start=1):
            if len(line) > self.max_line_chars:
                self.skipped_lines += 1
                logger.warning(
                    "Skipping oversized stream line %d (%d chars > %d)",
                    line_no,
                    len(line),
                    self.max_line_chars,
                )
                continue
            try:
                events = event_from_line(line)
            except StreamDecodeError as error:
                self.skipped_lines += 1
                logger.warning("Skipping stream line %d: %s", line_no, error)
                continue
            yield from events
