"""Agent integration: stream normalization and process execution."""

from storyloop.agent.events import Event, EventKind, normalize_record
from storyloop.agent.executor import AgentExecutor, CliAgentExecutor, ExecutorError

__all__ = [
    "AgentExecutor",
    "CliAgentExecutor",
    "Event",
    "EventKind",
    "ExecutorError",
    "normalize_record",
]
