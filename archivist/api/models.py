"""Shared data models for the agent core.

Kept separate from runner.py so compaction.py, tools.py and the storage
backends can import them without circular imports.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"

ROLES = frozenset({SYSTEM, USER, ASSISTANT, TOOL})

# The only tool-call type tag providers currently use
DEFAULT_TOOL_CALL_TYPE = "function"


@dataclass(frozen=True)
class ToolCallRequest:
    """A model's request to invoke a named tool."""

    id: str
    name: str
    arguments: str = "{}"  # serialized JSON, passed through unparsed
    type: str | None = DEFAULT_TOOL_CALL_TYPE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type or DEFAULT_TOOL_CALL_TYPE,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRequest:
        function = data.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            # Some providers send already-decoded objects
            arguments = json.dumps(arguments)
        return cls(
            id=data["id"],
            name=function.get("name", ""),
            arguments=arguments,
            type=data.get("type"),
        )


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.

    tool_calls only appear on assistant messages, tool_call_id only on
    tool-result messages.
    """

    role: str
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: list[ToolCallRequest] | tuple[ToolCallRequest, ...] = (),
    ) -> Message:
        return cls(role=ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role=TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize in chat-completions wire shape (also used for storage)."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=tuple(
                ToolCallRequest.from_dict(tc) for tc in data.get("tool_calls") or []
            ),
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(frozen=True)
class ToolParameter:
    """One parameter in a tool's declarative schema."""

    name: str
    type: str
    description: str = ""
    required: bool = False
    enum: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolDefinition:
    """The manifest entry advertised to the model for one tool."""

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()

    def to_schema(self) -> dict[str, Any]:
        """Render in OpenAI/DeepSeek function-calling format."""
        properties: dict[str, Any] = {}
        for param in self.parameters:
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.enum:
                prop["enum"] = list(param.enum)
            properties[param.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


@dataclass
class LLMReply:
    """Parsed response from the model provider."""

    content: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: dict[str, int] | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class CompressionOutcome:
    """Result of one history compression attempt."""

    compressed: bool
    original_count: int
    compressed_count: int
    summary: str | None = None
    estimated_tokens_saved: int = 0


@dataclass
class CompressionStats:
    """Running compression totals for one conversation."""

    total_compressions: int = 0
    total_tokens_saved: int = 0
    current_summary: str | None = None
    last_outcome: CompressionOutcome | None = None


@dataclass
class ToolRunResult:
    """Outcome of executing one tool call."""

    tool_call_id: str
    tool_name: str
    arguments: str
    result: str
    is_error: bool = False
    duration_ms: int = 0

    def to_message(self) -> Message:
        return Message.tool(self.tool_call_id, self.result)


@dataclass
class ConversationInfo:
    """Summary row for conversation listings."""

    id: str
    message_count: int
    last_message: str | None = None


@dataclass
class ChatResult:
    """What one chat turn returns to the caller."""

    message: Message
    conversation_id: str
    iterations: int = 0
    iterations_exhausted: bool = False
    tool_results: list[ToolRunResult] = field(default_factory=list)
    compression: CompressionOutcome | None = None
