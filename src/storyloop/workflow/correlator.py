"""Pairing of tool invocations with their results within one execution."""

from __future__ import annotations

from dataclasses import dataclass

from storyloop.agent.events import Event


@dataclass(frozen=True, slots=True)
class PendingTool:
    """A tool use waiting for its result."""

    id: str
    params: Event


class ToolCorrelator:
    """Buffer tool uses and hand them back when their results arrive.

    Results are matched by tool-use id when one is given. Without an id, or
    when the id matches nothing, the oldest pending tool is returned: the
    stream is assumed to deliver results in invocation order in that case.
    """

    def __init__(self) -> None:
        self._pending: list[PendingTool] = []

    def reset(self) -> None:
        self._pending = []

    def add_tool_use(self, tool_id: str, params: Event) -> None:
        self._pending.append(PendingTool(id=tool_id, params=params))

    def match_result(self, tool_use_id: str) -> tuple[Event | None, bool]:
        if not self._pending:
            return None, False

        if tool_use_id:
            for index, tool in enumerate(self._pending):
                if tool.id == tool_use_id:
                    del self._pending[index]
                    return tool.params, True

        tool = self._pending.pop(0)
        return tool.params, True

    def flush(self) -> list[PendingTool]:
        tools = self._pending
        self._pending = []
        return tools

    def has_pending(self) -> bool:
        return bool(self._pending)
