"""
What every tool sees.

A tool is any object with:
    name         : stable registry key the model calls it by
    description  : one line, shown to the model
    parameters   : JSON schema for its arguments
    async execute(arguments: dict, context: ExecutionContext) -> Any

The return value becomes the ToolResult payload and must be JSON-serializable.
Anything meant for the UI rather than the model goes through context.emit().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from chatrelay.events import ToolSideEffect


@dataclass
class ExecutionContext:
    """Caller identity plus the side-channel sink for UI-bound events."""
    user_id: str
    conversation_id: str = ""
    sink: Callable[[ToolSideEffect], None] | None = None

    def emit(self, tool_name: str, kind: str, data: Any = None):
        if self.sink is not None:
            self.sink(ToolSideEffect(tool_name=tool_name, kind=kind, data=data))


def tool_schema(tool) -> dict:
    """OpenAI function-calling schema for a tool."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }
