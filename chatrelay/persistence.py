"""
Persistence coordinator: the only writer of conversation messages.

The user message is committed before generation and must succeed. The
assistant message is committed once, after Completed; by then the user has
seen the content, so a failure there is logged and the turn still ends
normally.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from chatrelay.errors import PersistenceFailure
from chatrelay.events import Completed
from chatrelay.storage.models import Conversation, Message

logger = logging.getLogger(__name__)


def _later_than(created_at: str | None) -> str:
    """Now, or one microsecond after created_at if the clock hasn't moved past it."""
    now = datetime.now(timezone.utc)
    if created_at:
        floor = datetime.fromisoformat(created_at) + timedelta(microseconds=1)
        if floor > now:
            now = floor
    return now.isoformat(timespec="microseconds")


def _load_json(text):
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return text


def build_parts(messages: list[dict]) -> list[dict]:
    """
    Fold the response messages of one turn into UI message parts:
    reasoning, text and tool-invocation (call -> result).
    """
    parts: list[dict] = []
    invocations: dict[str, dict] = {}

    for msg in messages:
        role = msg.get("role")
        if role == "assistant":
            if msg.get("reasoning"):
                parts.append({"type": "reasoning", "reasoning": msg["reasoning"]})
            if msg.get("content"):
                parts.append({"type": "text", "text": msg["content"]})
            for call in msg.get("tool_calls") or []:
                fn = call.get("function", {})
                inv = {
                    "state": "call",
                    "toolCallId": call["id"],
                    "toolName": fn.get("name", ""),
                    "args": _load_json(fn.get("arguments") or "{}"),
                }
                invocations[call["id"]] = inv
                parts.append({"type": "tool-invocation", "toolInvocation": inv})
        elif role == "tool":
            inv = invocations.get(msg.get("tool_call_id"))
            if inv is not None:
                inv["state"] = "result"
                inv["result"] = _load_json(msg.get("content"))
    return parts


class PersistenceCoordinator:
    def __init__(self, store):
        self.store = store

    def ensure_conversation(self, conversation: Conversation) -> Conversation:
        """Create the conversation row unless it already exists."""
        existing = self.store.get_conversation(conversation.id)
        if existing is not None:
            return existing
        try:
            self.store.save_conversation(conversation)
        except sqlite3.Error as e:
            logger.error("Failed to create conversation %s: %s", conversation.id, e)
            raise PersistenceFailure("Failed to save chat") from e
        logger.info("Created conversation %s (user=%s)", conversation.id, conversation.user_id)
        return conversation

    def commit_user_message(self, conversation_id: str, message: Message) -> Message:
        """Store the inbound message. Raises PersistenceFailure; the turn must not start."""
        message.conversation_id = conversation_id
        message.role = "user"
        try:
            self.store.save_messages([message])
        except sqlite3.Error as e:
            logger.error("Failed to commit user message %s: %s", message.id, e)
            raise PersistenceFailure() from e
        return message

    def commit_assistant_message(
        self,
        conversation_id: str,
        completed: Completed,
        after: Message | None = None,
    ) -> Message | None:
        """
        Store the turn's assistant message, timestamped after `after`.
        Returns the stored message, or None if nothing was written.
        """
        if not completed.message_id:
            logger.warning("No assistant message found in conversation %s; nothing committed", conversation_id)
            return None

        message = Message(
            id=completed.message_id,
            conversation_id=conversation_id,
            role="assistant",
            parts=build_parts(completed.messages),
            attachments=[],
            created_at=_later_than(after.created_at if after else None),
        )
        try:
            self.store.save_messages([message])
        except sqlite3.Error as e:
            logger.error("Failed to save assistant message %s: %s", message.id, e)
            return None
        logger.debug("Committed assistant message %s (%d parts)", message.id, len(message.parts))
        return message
