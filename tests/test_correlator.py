from __future__ import annotations

import allure

from storyloop.agent.events import Event, EventKind
from storyloop.workflow.correlator import ToolCorrelator

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Tool Correlation"),
]


def _tool(tool_id: str, name: str = "Bash") -> Event:
    return Event(kind=EventKind.ASSISTANT, tool_id=tool_id, tool_name=name, raw_input="{}")


def test_match_by_id_out_of_order() -> None:
    correlator = ToolCorrelator()
    first, second = _tool("a", "Read"), _tool("b", "Grep")
    correlator.add_tool_use("a", first)
    correlator.add_tool_use("b", second)

    assert correlator.match_result("b") == (second, True)
    assert correlator.match_result("a") == (first, True)
    assert not correlator.has_pending()


def test_match_without_id_is_fifo() -> None:
    correlator = ToolCorrelator()
    tools = [_tool("t1"), _tool("t2"), _tool("t3")]
    for tool in tools:
        correlator.add_tool_use(tool.tool_id, tool)

    matched = [correlator.match_result("")[0] for _ in tools]

    assert matched == tools


def test_unknown_id_falls_back_to_oldest_pending() -> None:
    correlator = ToolCorrelator()
    oldest, newest = _tool("t1"), _tool("t2")
    correlator.add_tool_use("t1", oldest)
    correlator.add_tool_use("t2", newest)

    assert correlator.match_result("does-not-exist") == (oldest, True)
    assert correlator.match_result("t2") == (newest, True)


def test_match_with_nothing_pending_is_not_found() -> None:
    correlator = ToolCorrelator()

    assert correlator.match_result("t1") == (None, False)
    assert correlator.match_result("") == (None, False)


def test_entry_is_removed_once_matched() -> None:
    correlator = ToolCorrelator()
    correlator.add_tool_use("t1", _tool("t1"))

    correlator.match_result("t1")

    assert correlator.match_result("t1") == (None, False)


def test_flush_returns_pending_in_insertion_order_and_empties() -> None:
    correlator = ToolCorrelator()
    for tool_id in ("x", "y", "z"):
        correlator.add_tool_use(tool_id, _tool(tool_id))

    flushed = correlator.flush()

    assert [tool.id for tool in flushed] == ["x", "y", "z"]
    assert not correlator.has_pending()
    assert correlator.flush() == []


def test_reset_discards_prior_state() -> None:
    correlator = ToolCorrelator()
    correlator.add_tool_use("t1", _tool("t1"))
    correlator.add_tool_use("t2", _tool("t2"))

    correlator.reset()

    assert not correlator.has_pending()
    assert correlator.match_result("t1") == (None, False)
