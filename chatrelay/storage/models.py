"""
Data models for conversation storage.
These define the shape of data flowing through the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def utc_now() -> str:
    """ISO-8601 UTC timestamp, always with microseconds so strings sort."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Conversation:
    """A chat owned by one user."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    title: str = ""
    visibility: str = "private"   # "private" | "public"
    created_at: str = field(default_factory=utc_now)

    def readable_by(self, user_id: str) -> bool:
        return self.visibility == "public" or self.user_id == user_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "visibility": self.visibility,
            "createdAt": self.created_at,
        }


@dataclass
class Message:
    """A single message in a conversation."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    role: str = ""            # "user", "assistant", "tool"
    parts: list[dict] = field(default_factory=list)
    attachments: list[dict] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        return "".join(p.get("text", "") for p in self.parts if p.get("type") == "text")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chatId": self.conversation_id,
            "role": self.role,
            "parts": self.parts,
            "attachments": self.attachments,
            "createdAt": self.created_at,
        }


@dataclass
class StreamHandle:
    """One generation turn's resumable event channel."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    created_at: str = field(default_factory=utc_now)


@dataclass
class Document:
    """Content produced by the create_document tool."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    title: str = ""
    kind: str = "text"        # "text" | "code" | "sheet"
    content: str = ""
    created_at: str = field(default_factory=utc_now)
