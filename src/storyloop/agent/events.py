"""Canonical event model for the agent's stream-json output.

Every line the agent prints is a JSON record tagged by ``type``. This module
flattens those records into :class:`Event` values that the workflow runner can
dispatch on without knowing the wire schema.

Tool parameters are decoded into one frozen dataclass per known tool. Any tool
this module does not recognize becomes :class:`RawToolInput`, and every
tool-use event keeps the original parameters as JSON text in
``Event.raw_input`` so agent tools added later still reach the printer intact.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class EventKind(str, Enum):
    """Structural kind of a stream record."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    UNKNOWN = "unknown"


class StreamDecodeError(ValueError):
    """Raised when a stream line is not a JSON object."""


@dataclass(frozen=True, slots=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class Question:
    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multi_select: bool = False


@dataclass(frozen=True, slots=True)
class TodoItem:
    content: str
    status: str = ""
    active_form: str = ""


@dataclass(frozen=True, slots=True)
class BashInput:
    command: str = ""
    description: str = ""


@dataclass(frozen=True, slots=True)
class ReadInput:
    file_path: str = ""


@dataclass(frozen=True, slots=True)
class WriteInput:
    file_path: str = ""
    content: str = ""


@dataclass(frozen=True, slots=True)
class EditInput:
    file_path: str = ""
    old_string: str = ""
    new_string: str = ""
    replace_all: bool = False


@dataclass(frozen=True, slots=True)
class GlobInput:
    pattern: str = ""
    path: str = ""


@dataclass(frozen=True, slots=True)
class GrepInput:
    pattern: str = ""
    path: str = ""


@dataclass(frozen=True, slots=True)
class WebFetchInput:
    url: str = ""
    prompt: str = ""


@dataclass(frozen=True, slots=True)
class WebSearchInput:
    query: str = ""


@dataclass(frozen=True, slots=True)
class TaskInput:
    subagent_type: str = ""
    prompt: str = ""
    description: str = ""


@dataclass(frozen=True, slots=True)
class NotebookEditInput:
    notebook_path: str = ""
    cell_id: str = ""
    new_source: str = ""
    edit_mode: str = ""
    cell_type: str = ""


@dataclass(frozen=True, slots=True)
class AskUserQuestionInput:
    questions: tuple[Question, ...] = ()


@dataclass(frozen=True, slots=True)
class SkillInput:
    skill: str = ""
    args: str = ""


@dataclass(frozen=True, slots=True)
class TodoWriteInput:
    todos: tuple[TodoItem, ...] = ()


@dataclass(frozen=True, slots=True)
class RawToolInput:
    """Parameters of a tool without a dedicated variant."""

    payload: Any = None


ToolInput = Union[
    BashInput,
    ReadInput,
    WriteInput,
    EditInput,
    GlobInput,
    GrepInput,
    WebFetchInput,
    WebSearchInput,
    TaskInput,
    NotebookEditInput,
    AskUserQuestionInput,
    SkillInput,
    TodoWriteInput,
    RawToolInput,
]


@dataclass(frozen=True, slots=True)
class Event:
    """One normalized record of the agent stream."""

    kind: EventKind
    raw_type: str = ""
    subtype: str = ""
    text: str = ""

    tool_id: str = ""
    tool_name: str = ""
    tool_input: ToolInput | None = None
    raw_input: str = ""

    tool_use_id: str = ""
    tool_stdout: str = ""
    tool_stderr: str = ""
    has_tool_result: bool = False

    session_started: bool = False
    session_complete: bool = False

    input_tokens: int = 0
    output_tokens: int = 0

    result_text: str = ""
    is_error: bool = False
    duration_ms: int | None = None
    total_cost_usd: float | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_text(self) -> bool:
        return self.kind is EventKind.ASSISTANT and bool(self.text)

    @property
    def is_tool_use(self) -> bool:
        return self.kind is EventKind.ASSISTANT and bool(self.tool_name)

    @property
    def is_tool_result(self) -> bool:
        return self.kind is EventKind.USER and self.has_tool_result

    def raw_params(self) -> Any:
        """Decode ``raw_input`` back into its structural value."""

        if not self.raw_input:
            return None
        return json.loads(self.raw_input)


def normalize_record(raw: Mapping[str, Any]) -> Event:
    """Translate one decoded stream record into an :class:`Event`.

    Never raises for a mapping input: unknown record types and malformed
    sub-structures degrade to empty fields.
    """

    raw_type = _as_str(raw.get("type"))
    kind = _kind_of(raw_type)
    subtype = _as_str(raw.get("subtype"))
    values: dict[str, Any] = {
        "kind": kind,
        "raw_type": raw_type,
        "subtype": subtype,
        "session_started": kind is EventKind.SYSTEM and subtype == "init",
        "session_complete": kind is EventKind.RESULT,
    }

    message = raw.get("message")
    content = _content_blocks(message)

    if kind in (EventKind.ASSISTANT, EventKind.USER):
        text_block = _first_block(content, "text")
        if text_block is not None:
            values["text"] = _as_str(text_block.get("text"))

    if kind is EventKind.ASSISTANT:
        tool_block = _first_block(content, "tool_use")
        if tool_block is not None:
            values.update(_tool_use_fields(tool_block))

    if kind is EventKind.USER:
        values.update(_tool_result_fields(raw, content))

    usage = raw.get("usage") if kind is EventKind.RESULT else None
    if usage is None and isinstance(message, Mapping):
        usage = message.get("usage")
    input_tokens, output_tokens = _token_counts(usage)
    values["input_tokens"] = input_tokens
    values["output_tokens"] = output_tokens

    if kind is EventKind.RESULT:
        values["result_text"] = _as_str(raw.get("result"))
        values["is_error"] = bool(raw.get("is_error", False))
        values["duration_ms"] = _as_int_or_none(raw.get("duration_ms"))
        values["total_cost_usd"] = _as_float_or_none(raw.get("total_cost_usd"))
    elif kind is EventKind.SYSTEM:
        values["extra"] = {
            key: raw[key] for key in ("session_id", "model", "cwd") if key in raw
        }

    return Event(**values)


def expand_record(raw: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    """Split an assistant message with several content blocks into one record per block.

    Usage counters stay on the first split record only so token accounting is
    not duplicated.
    """

    message = raw.get("message")
    relevant = [
        block for block in _content_blocks(message) if block.get("type") in ("text", "tool_use")
    ]
    is_assistant = _kind_of(_as_str(raw.get("type"))) is EventKind.ASSISTANT
    if not is_assistant or len(relevant) <= 1 or not isinstance(message, Mapping):
        yield raw
        return

    for index, block in enumerate(relevant):
        split_message = {key: value for key, value in message.items() if key != "content"}
        if index > 0:
            split_message.pop("usage", None)
        split_message["content"] = [block]
        yield {**raw, "message": split_message}


def event_from_line(line: str) -> list[Event]:
    """Decode one stream line into zero or more events."""

    stripped = line.strip()
    if not stripped:
        return []
    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError as error:
        raise StreamDecodeError(f"Invalid stream-json line: {error.msg}") from error
    if not isinstance(decoded, Mapping):
        raise StreamDecodeError(
            f"Stream-json line must be an object, got {type(decoded).__name__}",
        )
    return [normalize_record(record) for record in expand_record(decoded)]


def parse_tool_input(name: str, params: Any) -> ToolInput:
    """Build the typed variant for ``name`` or fall back to :class:`RawToolInput`."""

    parser = _TOOL_PARSERS.get(name)
    if parser is None or not isinstance(params, Mapping):
        return RawToolInput(payload=params)
    return parser(params)


def _tool_use_fields(block: Mapping[str, Any]) -> dict[str, Any]:
    name = _as_str(block.get("name"))
    params = block.get("input")
    return {
        "tool_id": _as_str(block.get("id")),
        "tool_name": name,
        "tool_input": parse_tool_input(name, params) if name else None,
        "raw_input": json.dumps(params if params is not None else {}, ensure_ascii=False),
    }


def _tool_result_fields(
    raw: Mapping[str, Any],
    content: list[Mapping[str, Any]],
) -> dict[str, Any]:
    result_block = _first_block(content, "tool_result")
    payload = raw.get("tool_use_result")
    if payload is None and result_block is None:
        return {}

    fields: dict[str, Any] = {"has_tool_result": True}
    if result_block is not None:
        fields["tool_use_id"] = _as_str(result_block.get("tool_use_id"))

    if isinstance(payload, Mapping):
        fields["tool_stdout"] = _as_str(payload.get("stdout"))
        fields["tool_stderr"] = _as_str(payload.get("stderr"))
    elif isinstance(payload, str):
        fields["tool_stdout"] = payload
    elif result_block is not None:
        block_text = _block_content_text(result_block.get("content"))
        if result_block.get("is_error"):
            fields["tool_stderr"] = block_text
        else:
            fields["tool_stdout"] = block_text
    return fields


def _block_content_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [
            _as_str(item.get("text"))
            for item in value
            if isinstance(item, Mapping) and item.get("type") == "text"
        ]
        return "\n".join(part for part in parts if part)
    return ""


def _content_blocks(message: Any) -> list[Mapping[str, Any]]:
    if not isinstance(message, Mapping):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, Mapping)]


def _first_block(content: list[Mapping[str, Any]], block_type: str) -> Mapping[str, Any] | None:
    for block in content:
        if block.get("type") == block_type:
            return block
    return None


def _token_counts(usage: Any) -> tuple[int, int]:
    if not isinstance(usage, Mapping):
        return 0, 0
    return (
        _as_int_or_none(usage.get("input_tokens")) or 0,
        _as_int_or_none(usage.get("output_tokens")) or 0,
    )


def _kind_of(raw_type: str) -> EventKind:
    try:
        return EventKind(raw_type)
    except ValueError:
        return EventKind.UNKNOWN


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _as_float_or_none(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _questions(params: Mapping[str, Any]) -> tuple[Question, ...]:
    raw_questions = params.get("questions")
    if not isinstance(raw_questions, list):
        return ()
    questions: list[Question] = []
    for item in raw_questions:
        if not isinstance(item, Mapping):
            continue
        raw_options = item.get("options")
        options = tuple(
            QuestionOption(
                label=_as_str(option.get("label")),
                description=_as_str(option.get("description")),
            )
            for option in (raw_options if isinstance(raw_options, list) else [])
            if isinstance(option, Mapping)
        )
        questions.append(
            Question(
                question=_as_str(item.get("question")),
                header=_as_str(item.get("header")),
                options=options,
                multi_select=bool(item.get("multiSelect", False)),
            ),
        )
    return tuple(questions)


def _todos(params: Mapping[str, Any]) -> tuple[TodoItem, ...]:
    raw_todos = params.get("todos")
    if not isinstance(raw_todos, list):
        return ()
    return tuple(
        TodoItem(
            content=_as_str(item.get("content")),
            status=_as_str(item.get("status")),
            active_form=_as_str(item.get("activeForm")),
        )
        for item in raw_todos
        if isinstance(item, Mapping)
    )


_TOOL_PARSERS: dict[str, Callable[[Mapping[str, Any]], ToolInput]] = {
    "Bash": lambda p: BashInput(
        command=_as_str(p.get("command")),
        description=_as_str(p.get("description")),
    ),
    "Read": lambda p: ReadInput(file_path=_as_str(p.get("file_path"))),
    "Write": lambda p: WriteInput(
        file_path=_as_str(p.get("file_path")),
        content=_as_str(p.get("content")),
    ),
    "Edit": lambda p: EditInput(
        file_path=_as_str(p.get("file_path")),
        old_string=_as_str(p.get("old_string")),
        new_string=_as_str(p.get("new_string")),
        replace_all=bool(p.get("replace_all", False)),
    ),
    "Glob": lambda p: GlobInput(pattern=_as_str(p.get("pattern")), path=_as_str(p.get("path"))),
    "Grep": lambda p: GrepInput(pattern=_as_str(p.get("pattern")), path=_as_str(p.get("path"))),
    "WebFetch": lambda p: WebFetchInput(url=_as_str(p.get("url")), prompt=_as_str(p.get("prompt"))),
    "WebSearch": lambda p: WebSearchInput(query=_as_str(p.get("query"))),
    "Task": lambda p: TaskInput(
        subagent_type=_as_str(p.get("subagent_type")),
        prompt=_as_str(p.get("prompt")),
        description=_as_str(p.get("description")),
    ),
    "NotebookEdit": lambda p: NotebookEditInput(
        notebook_path=_as_str(p.get("notebook_path")),
        cell_id=_as_str(p.get("cell_id")),
        new_source=_as_str(p.get("new_source")),
        edit_mode=_as_str(p.get("edit_mode")),
        cell_type=_as_str(p.get("cell_type")),
    ),
    "AskUserQuestion": lambda p: AskUserQuestionInput(questions=_questions(p)),
    "Skill": lambda p: SkillInput(skill=_as_str(p.get("skill")), args=_as_str(p.get("args"))),
    "TodoWrite": lambda p: TodoWriteInput(todos=_todos(p)),
}
