"""
Model invoker: one turn's worth of model calls as a lazy event stream.

Each round streams a chat completion from the backend and turns SSE chunks
into events. If the round ends with tool calls, each call is announced
(ToolCallRequested), dispatched through the ToolExecutor (ToolResult), and
another round starts with the results appended. At most `max_steps` model
calls are made; hitting the limit completes the turn with whatever was
produced.

Nothing here persists anything.
"""

from __future__ import annotations

import json
import logging
from uuid import uuid4

from chatrelay.errors import UnknownToolError, UpstreamUnavailable
from chatrelay.events import (
    Completed,
    Failed,
    ReasoningDelta,
    TextDelta,
    ToolCallRequested,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stored history -> chat completion messages
# ---------------------------------------------------------------------------

def _user_content(msg):
    text = msg.text
    images = [a for a in msg.attachments if str(a.get("contentType", "")).startswith("image/")]
    if not images:
        return text
    content = [{"type": "text", "text": text}] if text else []
    content += [{"type": "image_url", "image_url": {"url": a["url"]}} for a in images]
    return content


def to_model_messages(history: list) -> list[dict]:
    """Convert stored Messages into chat completion format."""
    out = []
    for msg in history:
        if msg.role == "user":
            out.append({"role": "user", "content": _user_content(msg)})
            continue
        if msg.role != "assistant":
            continue

        calls, results = [], []
        for part in msg.parts:
            if part.get("type") != "tool-invocation":
                continue
            inv = part.get("toolInvocation", {})
            if "result" not in inv:
                continue  # a call without a result is not valid history
            calls.append({
                "id": inv["toolCallId"],
                "type": "function",
                "function": {"name": inv["toolName"], "arguments": json.dumps(inv.get("args", {}))},
            })
            results.append({
                "role": "tool",
                "tool_call_id": inv["toolCallId"],
                "content": json.dumps(inv["result"], ensure_ascii=False, default=str),
            })
        if calls:
            out.append({"role": "assistant", "content": "", "tool_calls": calls})
            out.extend(results)
        if msg.text:
            out.append({"role": "assistant", "content": msg.text})
    return out


def _wire_message(msg: dict) -> dict:
    """Strip bookkeeping keys the backend does not accept."""
    return {k: v for k, v in msg.items() if k not in ("id", "reasoning")}


# ---------------------------------------------------------------------------
# SSE + reasoning tag parsing
# ---------------------------------------------------------------------------

SSE_DONE = object()


def parse_sse_line(line: str):
    """Return the chunk dict, SSE_DONE, or None for lines to skip."""
    if not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if data_str == "[DONE]":
        return SSE_DONE
    try:
        return json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("Skipping unparseable SSE line: %s", data_str[:120])
        return None


class ThinkTagSplitter:
    """
    Splits streamed text into ("text" | "reasoning", piece) using
    <think>...</think> tags. Tags may arrive split across chunks.
    """
    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self):
        self._buf = ""
        self._in_think = False

    @staticmethod
    def _partial_suffix(buf: str, tag: str) -> int:
        for k in range(min(len(tag) - 1, len(buf)), 0, -1):
            if buf.endswith(tag[:k]):
                return k
        return 0

    def feed(self, text: str) -> list[tuple[str, str]]:
        self._buf += text
        out = []
        while self._buf:
            kind = "reasoning" if self._in_think else "text"
            tag = self.CLOSE if self._in_think else self.OPEN
            idx = self._buf.find(tag)
            if idx >= 0:
                if idx:
                    out.append((kind, self._buf[:idx]))
                self._buf = self._buf[idx + len(tag):]
                self._in_think = not self._in_think
                continue
            keep = self._partial_suffix(self._buf, tag)
            emit = self._buf[:len(self._buf) - keep]
            if emit:
                out.append((kind, emit))
            self._buf = self._buf[len(self._buf) - keep:]
            break
        return out

    def flush(self) -> list[tuple[str, str]]:
        if not self._buf:
            return []
        kind = "reasoning" if self._in_think else "text"
        piece, self._buf = self._buf, ""
        return [(kind, piece)]


def _accumulate_tool_call(calls: dict, fragment: dict):
    """Merge a streamed tool_calls fragment into calls, keyed by index."""
    idx = fragment.get("index", len(calls))
    call = calls.setdefault(idx, {"id": "", "name": "", "arguments": ""})
    if fragment.get("id"):
        call["id"] = fragment["id"]
    fn = fragment.get("function") or {}
    if fn.get("name"):
        call["name"] += fn["name"]
    if fn.get("arguments"):
        call["arguments"] += fn["arguments"]


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------

class ModelInvoker:
    """Streams one turn from the backend, running tool rounds in between."""

    def __init__(
        self,
        backend,
        executor,
        models: dict[str, str] | None = None,
        reasoning_variants: list[str] | None = None,
        max_steps: int = 5,
    ):
        self.backend = backend
        self.executor = executor
        self.models = models or {}
        self.reasoning_variants = set(reasoning_variants or [])
        self.max_steps = max_steps

    def model_for(self, variant: str) -> str:
        return self.models.get(variant, variant)

    def is_reasoning(self, variant: str) -> bool:
        return variant in self.reasoning_variants or variant.endswith("-reasoning")

    async def invoke(self, instructions: str, history: list, tools: list[str], variant: str, context):
        """
        Yield TextDelta / ReasoningDelta / ToolCallRequested / ToolResult
        events, then exactly one Completed or Failed.

        `tools` are the names active for this turn; a call to anything else
        is treated as an unknown tool.
        """
        model = self.model_for(variant)
        reasoning = self.is_reasoning(variant)
        base = [{"role": "system", "content": instructions}] + to_model_messages(history)
        schemas = self.executor.registry.schemas(tools) if tools else []
        response: list[dict] = []
        trailing_id = None

        for step in range(1, self.max_steps + 1):
            message_id = uuid4().hex
            text_parts, reasoning_parts = [], []
            calls: dict[int, dict] = {}
            splitter = ThinkTagSplitter() if reasoning else None

            body = {"model": model, "messages": [_wire_message(m) for m in base + response]}
            if schemas:
                body["tools"] = schemas

            try:
                async for line in self.backend.forward_stream(body):
                    chunk = parse_sse_line(line)
                    if chunk is None:
                        continue
                    if chunk is SSE_DONE:
                        break
                    if chunk.get("error"):
                        raise UpstreamUnavailable(str(chunk["error"]))

                    choices = chunk.get("choices") or [{}]
                    delta = choices[0].get("delta") or {}

                    if delta.get("reasoning_content"):
                        reasoning_parts.append(delta["reasoning_content"])
                        yield ReasoningDelta(delta["reasoning_content"])

                    content = delta.get("content")
                    if content:
                        pieces = splitter.feed(content) if splitter else [("text", content)]
                        for kind, piece in pieces:
                            if kind == "reasoning":
                                reasoning_parts.append(piece)
                                yield ReasoningDelta(piece)
                            else:
                                text_parts.append(piece)
                                yield TextDelta(piece)

                    for fragment in delta.get("tool_calls") or []:
                        _accumulate_tool_call(calls, fragment)
            except UpstreamUnavailable as e:
                logger.error("Model call failed (model=%s, step=%d): %s", model, step, e)
                yield Failed.from_error(e)
                return

            if splitter:
                for kind, piece in splitter.flush():
                    if kind == "reasoning":
                        reasoning_parts.append(piece)
                        yield ReasoningDelta(piece)
                    else:
                        text_parts.append(piece)
                        yield TextDelta(piece)

            assistant = {"id": message_id, "role": "assistant", "content": "".join(text_parts)}
            if reasoning_parts:
                assistant["reasoning"] = "".join(reasoning_parts)
            ordered = [calls[i] for i in sorted(calls)]
            for call in ordered:
                call["id"] = call["id"] or f"call_{uuid4().hex[:24]}"
            if ordered:
                assistant["tool_calls"] = [
                    {"id": c["id"], "type": "function",
                     "function": {"name": c["name"], "arguments": c["arguments"] or "{}"}}
                    for c in ordered
                ]
            response.append(assistant)
            trailing_id = message_id

            if not ordered:
                yield Completed(messages=response, message_id=trailing_id)
                return

            for call in ordered:
                try:
                    arguments = json.loads(call["arguments"] or "{}")
                except json.JSONDecodeError:
                    logger.warning("Tool '%s' got unparseable arguments: %s", call["name"], call["arguments"][:200])
                    arguments = {}

                yield ToolCallRequested(call["id"], call["name"], arguments)

                try:
                    if call["name"] not in (tools or []):
                        raise UnknownToolError(call["name"], list(tools or []))
                    result = await self.executor.execute(call["name"], arguments, context, call["id"])
                except UnknownToolError as e:
                    logger.error("Turn aborted: %s", e)
                    yield Failed.from_error(e)
                    return

                yield result
                response.append({
                    "id": uuid4().hex,
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "name": call["name"],
                    "content": json.dumps(result.result, ensure_ascii=False, default=str),
                })

        logger.warning(
            "Tool round limit reached (%d steps, model=%s); finishing with partial output",
            self.max_steps, model,
        )
        yield Completed(messages=response, message_id=trailing_id, finish_reason="max_steps")
