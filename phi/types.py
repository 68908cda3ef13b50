"""Conversation data model and the events exchanged during a turn.

Content blocks and events are closed variants: every class carries a
``kind`` (blocks) or ``type`` (events) tag and consumers dispatch on that
tag, failing loudly on anything they do not know.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union


class ToolState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_STATE_RANK = {
    ToolState.PENDING: 0,
    ToolState.EXECUTING: 1,
    ToolState.COMPLETED: 2,
    ToolState.FAILED: 2,
}


# -- Content blocks ----------------------------------------------------------


@dataclass
class TextBlock:
    text: str = ""
    kind: ClassVar[str] = "text"


@dataclass
class ToolInvocation:
    id: str
    name: str
    input: dict = field(default_factory=dict)
    state: ToolState = ToolState.PENDING
    result: str | None = None
    is_error: bool = False
    kind: ClassVar[str] = "tool_use"

    def advance(self, state: ToolState) -> bool:
        """Move to *state* if it is later in the lifecycle. Returns False otherwise."""
        if _STATE_RANK[state] <= _STATE_RANK[self.state]:
            return False
        self.state = state
        return True


ContentBlock = Union[TextBlock, ToolInvocation]


# -- Turns -------------------------------------------------------------------


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class UserTurn:
    """Typed user input, or the synthetic turn carrying one round of tool results."""

    text: str = ""
    results: tuple[ToolResult, ...] = ()
    role: ClassVar[str] = "user"


@dataclass(frozen=True)
class AssistantTurn:
    content: tuple[ContentBlock, ...] = ()
    role: ClassVar[str] = "assistant"

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if b.kind == "text")

    @property
    def tool_invocations(self) -> list[ToolInvocation]:
        return [b for b in self.content if b.kind == "tool_use"]


Turn = Union[UserTurn, AssistantTurn]


# -- Events ------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: ClassVar[str] = "text_delta"


@dataclass(frozen=True)
class InputJsonDelta:
    """Cumulative JSON text of a tool's input so far, not an increment."""

    partial_json: str
    type: ClassVar[str] = "input_json_delta"


@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    block: ContentBlock
    type: ClassVar[str] = "content_block_start"


@dataclass(frozen=True)
class ContentBlockDelta:
    index: int
    delta: Union[TextDelta, InputJsonDelta]
    type: ClassVar[str] = "content_block_delta"


@dataclass(frozen=True)
class ContentBlockStop:
    index: int
    type: ClassVar[str] = "content_block_stop"


@dataclass(frozen=True)
class MessageStop:
    stop_reason: str | None = None
    type: ClassVar[str] = "message_stop"


@dataclass(frozen=True)
class ToolExecutionStart:
    tool_use_id: str
    name: str
    input: dict = field(default_factory=dict)
    type: ClassVar[str] = "tool_execution_start"


@dataclass(frozen=True)
class ToolExecutionEnd:
    tool_use_id: str
    result: str
    is_error: bool = False
    type: ClassVar[str] = "tool_execution_end"


@dataclass(frozen=True)
class TurnDone:
    exhausted: bool = False
    type: ClassVar[str] = "done"


StreamEvent = Union[ContentBlockStart, ContentBlockDelta, ContentBlockStop, MessageStop]
AgentEvent = Union[StreamEvent, ToolExecutionStart, ToolExecutionEnd, TurnDone]


# -- Serialisation -----------------------------------------------------------


def block_to_dict(block: ContentBlock) -> dict:
    if block.kind == "text":
        return {"type": "text", "text": block.text}
    if block.kind == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    raise ValueError(f"unknown content block kind: {block.kind!r}")


def block_from_dict(data: dict) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(data.get("text", ""))
    if kind == "tool_use":
        return ToolInvocation(data["id"], data["name"], dict(data.get("input") or {}))
    raise ValueError(f"unknown content block type: {kind!r}")


def turn_to_dict(turn: Turn) -> dict:
    if turn.role == "user":
        out: dict = {"role": "user", "text": turn.text}
        if turn.results:
            out["results"] = [
                {
                    "tool_use_id": r.tool_use_id,
                    "content": r.content,
                    "is_error": r.is_error,
                }
                for r in turn.results
            ]
        return out
    if turn.role == "assistant":
        return {
            "role": "assistant",
            "content": [block_to_dict(b) for b in turn.content],
        }
    raise ValueError(f"unknown turn role: {turn.role!r}")


def turn_from_dict(data: dict) -> Turn:
    role = data.get("role")
    if role == "user":
        results = tuple(
            ToolResult(r["tool_use_id"], r["content"], bool(r.get("is_error")))
            for r in data.get("results", [])
        )
        return UserTurn(data.get("text", ""), results)
    if role == "assistant":
        return AssistantTurn(tuple(block_from_dict(b) for b in data.get("content", [])))
    raise ValueError(f"unknown turn role: {role!r}")
