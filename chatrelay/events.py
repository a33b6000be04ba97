"""
Generation events.

One turn produces an ordered sequence of these. The Model Invoker emits
everything except ToolSideEffect, which tools push through their
side-channel sink; the Multiplexer merges both. Exactly one Completed or
Failed ends a sequence.

to_dict() is the wire shape: what gets appended to the resumable channel
and written to the client as SSE data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

USER_ERROR_MESSAGE = "Oops, an error occurred while generating a response!"


@dataclass
class TextDelta:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text-delta", "text": self.text}


@dataclass
class ReasoningDelta:
    text: str

    def to_dict(self) -> dict:
        return {"type": "reasoning", "text": self.text}


@dataclass
class ToolCallRequested:
    tool_call_id: str
    tool_name: str
    arguments: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": "tool-call",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "args": self.arguments,
        }


@dataclass
class ToolResult:
    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool = False

    def to_dict(self) -> dict:
        return {
            "type": "tool-result",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "result": self.result,
            "isError": self.is_error,
        }


@dataclass
class ToolSideEffect:
    """UI-directed data a tool emits while it runs (e.g. document text)."""
    tool_name: str
    kind: str
    data: Any = None

    def to_dict(self) -> dict:
        return {"type": "data", "toolName": self.tool_name, "kind": self.kind, "content": self.data}


@dataclass
class Completed:
    """
    Generation finished. `messages` are the response messages in chat
    completion format, each with an "id"; `message_id` is the trailing
    assistant message id (None if there was no assistant message).
    """
    messages: list[dict] = field(default_factory=list)
    message_id: str | None = None
    finish_reason: str = "stop"

    def to_dict(self) -> dict:
        return {"type": "finish", "messageId": self.message_id, "finishReason": self.finish_reason}


@dataclass
class Failed:
    cause: str
    message: str = ""

    @classmethod
    def from_error(cls, exc: Exception) -> "Failed":
        """Terminal event for an error; the cause is the error's code."""
        return cls(getattr(exc, "code", "internal"), str(exc))

    def to_dict(self) -> dict:
        return {"type": "error", "cause": self.cause, "message": USER_ERROR_MESSAGE}


TERMINAL_TYPES = ("finish", "error")


def is_terminal(event) -> bool:
    return isinstance(event, (Completed, Failed))
