"""
Chat orchestrator: sequences one user turn end to end.

    validate ownership -> quota -> retrieve context -> compose prompt
      -> invoke model -> multiplex -> publish resumable -> commit

Everything up to and including the user-message commit happens inline in
start_turn() and raises ChatError subclasses. Everything after runs in a
background task owned by the channel manager, so the turn finishes and the
assistant message is committed whether or not anyone is still reading.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum

from chatrelay.config import get_config, max_messages_per_day
from chatrelay.errors import Forbidden, MalformedRequest, NotFound, PersistenceFailure, RateLimited
from chatrelay.events import Completed, Failed
from chatrelay.prompts import PERSONA, TITLE_PROMPT, RequestHints, compose
from chatrelay.storage.models import Conversation, Message, StreamHandle
from chatrelay.tools.base import ExecutionContext
from chatrelay.wiretap import WireLog

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 80


class TurnState(str, Enum):
    VALIDATING = "validating"
    QUOTA_CHECK = "quota_check"
    CONTEXT_RETRIEVAL = "context_retrieval"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    COMMITTING = "committing"
    DONE = "done"
    ERRORED = "errored"


_ORDER = list(TurnState)
_TERMINAL = (TurnState.DONE, TurnState.ERRORED)


class Turn:
    """State of one turn. Moves forward only; DONE and ERRORED are final."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.state = TurnState.VALIDATING
        self.stream_id: str | None = None
        self.error: str | None = None

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    def advance(self, state: TurnState):
        if self.finished:
            raise RuntimeError(f"Turn for {self.conversation_id} already {self.state.value}")
        if _ORDER.index(state) < _ORDER.index(self.state):
            raise RuntimeError(f"Cannot move turn from {self.state.value} back to {state.value}")
        logger.debug("Turn %s: %s -> %s", self.conversation_id, self.state.value, state.value)
        self.state = state

    def fail(self, cause: str):
        if self.finished:
            return
        logger.debug("Turn %s: %s -> errored (%s)", self.conversation_id, self.state.value, cause)
        self.state = TurnState.ERRORED
        self.error = cause


@dataclass
class User:
    id: str
    type: str = "regular"     # "guest" | "regular"


@dataclass
class TurnRequest:
    conversation_id: str
    message: Message
    variant: str = "chat-model"
    visibility: str = "private"
    hints: RequestHints = field(default_factory=RequestHints)


@dataclass
class TurnResult:
    stream_id: str
    events: object            # async iterator of ChannelEvent
    resumed: bool = False
    turn: Turn | None = None


@dataclass
class ResumeResult:
    events: object | None     # None -> nothing to stream, see message
    message: str = ""
    stream_id: str | None = None


class ChatOrchestrator:
    def __init__(
        self,
        store,
        persistence,
        retriever,
        invoker,
        multiplexer,
        channels,
        backend=None,
        tool_registry=None,
        wire_log: WireLog | None = None,
    ):
        self.store = store
        self.persistence = persistence
        self.retriever = retriever
        self.invoker = invoker
        self.multiplexer = multiplexer
        self.channels = channels
        self.backend = backend
        self.tool_registry = tool_registry
        self.cfg = get_config()

        self.title_model = self.invoker.model_for("title-model")
        self.currency = self.cfg.get("catalog", {}).get("currency_symbol", "₹")
        self.retrieval_enabled = self.cfg.get("retrieval", {}).get("enabled", True)

        if wire_log is None:
            wire_path = self.cfg.get("wiretap", {}).get("path", "./data/wire.jsonl")
            wire_log = WireLog(wire_path)
        self.wire = wire_log

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def active_tools(self, variant: str) -> list[str]:
        if self.tool_registry is None or self.invoker.is_reasoning(variant):
            return []
        return self.tool_registry.list_tools()

    async def generate_title(self, text: str) -> str:
        """Short title from the first message; falls back to the message itself."""
        fallback = text.strip()[:TITLE_MAX_CHARS] or "New chat"
        if self.backend is None:
            return fallback
        resp = await self.backend.forward({
            "model": self.title_model,
            "messages": [
                {"role": "system", "content": TITLE_PROMPT},
                {"role": "user", "content": text},
            ],
        })
        title = resp.content.strip().strip('"') if resp.ok else ""
        if not title:
            logger.warning("Title generation failed (%s); using message text", resp.error or "empty")
            return fallback
        return title[:TITLE_MAX_CHARS]

    # ------------------------------------------------------------------
    # Create turn
    # ------------------------------------------------------------------

    async def start_turn(self, request: TurnRequest, user: User) -> TurnResult:
        cid = request.conversation_id
        message = request.message
        turn = Turn(cid)

        try:
            # --- Validating ---
            conv = self.store.get_conversation(cid)
            if conv is not None and conv.user_id != user.id:
                raise Forbidden()

            existing = self.store.get_message(message.id)
            if existing is not None:
                resumed = await self._resume_retry(existing, cid)
                if resumed is None:
                    raise MalformedRequest(f"Message {message.id} already exists")
                turn.stream_id = resumed.stream_id
                turn.advance(TurnState.DONE)
                resumed.turn = turn
                return resumed

            # --- QuotaCheck ---
            turn.advance(TurnState.QUOTA_CHECK)
            count = self.store.count_user_messages(user.id, hours=24)
            limit = max_messages_per_day(self.cfg, user.type)
            if count > limit:
                logger.info("User %s over daily quota (%d > %d)", user.id, count, limit)
                raise RateLimited()

            if conv is None:
                title = await self.generate_title(message.text)
                conv = self.persistence.ensure_conversation(Conversation(
                    id=cid, user_id=user.id, title=title, visibility=request.visibility,
                ))

            history = self.store.get_messages(cid)
            user_message = self.persistence.commit_user_message(cid, message)
            self.wire.log("inbound", "user", user_message.text, model=request.variant, conversation_id=cid)

            handle = StreamHandle(conversation_id=cid)
            try:
                self.store.create_stream(handle)
            except sqlite3.Error as e:
                raise PersistenceFailure("Failed to create stream") from e
            turn.stream_id = handle.id

            # --- ContextRetrieval ---
            turn.advance(TurnState.CONTEXT_RETRIEVAL)
            snippets = await self.retriever.retrieve(user_message.text) if self.retrieval_enabled else []
            reasoning = self.invoker.is_reasoning(request.variant)
            instructions = compose(
                PERSONA, request.hints, snippets, request.variant,
                reasoning=reasoning, currency=self.currency,
            )
        except Exception as e:
            turn.fail(type(e).__name__)
            raise

        # --- Generating / Publishing ---
        turn.advance(TurnState.GENERATING)
        source = self._generate(
            turn, user, user_message, instructions,
            history + [user_message], self.active_tools(request.variant), request.variant,
        )
        events = await self.channels.publish(handle.id, source)
        if not turn.finished:
            turn.advance(TurnState.PUBLISHING)
        logger.info(
            "Turn started: conv=%s stream=%s variant=%s snippets=%d",
            cid, handle.id, request.variant, len(snippets),
        )
        return TurnResult(stream_id=handle.id, events=events, turn=turn)

    async def _resume_retry(self, existing: Message, cid: str) -> TurnResult | None:
        """A resent message attaches to its conversation's latest stream, if any."""
        if existing.conversation_id != cid:
            return None
        stream_ids = self.store.get_stream_ids(cid)
        if not stream_ids:
            return None
        events = await self.channels.subscribe(stream_ids[-1])
        if events is None:
            return None
        logger.info("Message %s resent; attaching to stream %s", existing.id, stream_ids[-1])
        return TurnResult(stream_id=stream_ids[-1], events=events, resumed=True)

    async def _generate(self, turn: Turn, user: User, user_message: Message,
                        instructions: str, history: list, tools: list[str], variant: str):
        """Multiplexed events for one turn, committing the assistant message on Completed."""
        cid = turn.conversation_id

        def invoke(sink):
            context = ExecutionContext(user_id=user.id, conversation_id=cid, sink=sink)
            return self.invoker.invoke(instructions, history, tools, variant, context)

        async for event in self.multiplexer.stream(invoke):
            if isinstance(event, Completed):
                turn.advance(TurnState.COMMITTING)
                stored = self.persistence.commit_assistant_message(cid, event, after=user_message)
                used = []
                if stored is not None:
                    used = [p["toolInvocation"]["toolName"] for p in stored.parts if p.get("type") == "tool-invocation"]
                self.wire.log(
                    "outbound", "assistant", stored.text if stored else "",
                    model=variant, conversation_id=cid, stream_id=turn.stream_id, tools=used,
                )
                turn.advance(TurnState.DONE)
            elif isinstance(event, Failed):
                turn.fail(event.cause)
                logger.error("Turn failed: conv=%s stream=%s cause=%s %s", cid, turn.stream_id, event.cause, event.message)
                self.wire.log(
                    "outbound", "error", f"{event.cause}: {event.message}",
                    model=variant, conversation_id=cid, stream_id=turn.stream_id,
                )
            yield event

    # ------------------------------------------------------------------
    # Resume / delete
    # ------------------------------------------------------------------

    async def resume(self, conversation_id: str, user: User, after: str | None = None) -> ResumeResult:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            raise NotFound()
        if not conv.readable_by(user.id):
            raise Forbidden()

        if not self.channels.available:
            return ResumeResult(None, "Resumable streams are not available")

        stream_ids = self.store.get_stream_ids(conversation_id)
        if not stream_ids:
            return ResumeResult(None, "No streams found")

        recent = stream_ids[-1]
        events = await self.channels.subscribe(recent, after=after)
        if events is None:
            return ResumeResult(None, "No recent stream found", stream_id=recent)
        logger.debug("Resuming stream %s for conv=%s after=%s", recent, conversation_id, after)
        return ResumeResult(events, stream_id=recent)

    def delete_conversation(self, conversation_id: str, user: User) -> Conversation:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            raise NotFound()
        if conv.user_id != user.id:
            raise Forbidden()
        return self.store.delete_conversation(conversation_id)
