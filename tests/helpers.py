"""
Shared fakes for the test suite: a scripted chat backend that speaks
OpenAI-style SSE, and builders for the lines it emits.
"""

import asyncio
import json

import fakeredis

from chatrelay.backends.base import BackendResponse
from chatrelay.errors import UpstreamUnavailable

DONE = "data: [DONE]"


def text_line(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


def reasoning_line(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"reasoning_content": text}}]})


def tool_call_lines(call_id: str, name: str, arguments: dict, index: int = 0) -> list[str]:
    """A tool call split across three fragments, the way providers stream it."""
    args = json.dumps(arguments)
    half = len(args) // 2
    return [
        "data: " + json.dumps({"choices": [{"delta": {"tool_calls": [
            {"index": index, "id": call_id, "type": "function", "function": {"name": name, "arguments": ""}},
        ]}}]}),
        "data: " + json.dumps({"choices": [{"delta": {"tool_calls": [
            {"index": index, "function": {"arguments": args[:half]}},
        ]}}]}),
        "data: " + json.dumps({"choices": [{"delta": {"tool_calls": [
            {"index": index, "function": {"arguments": args[half:]}},
        ]}}]}),
    ]


def text_round(*pieces: str) -> list[str]:
    return [text_line(p) for p in pieces] + [DONE]


class ScriptedBackend:
    """
    Each forward_stream() call replays the next scripted round.
    A round is a list of SSE lines, or an exception to raise.
    """

    name = "scripted"

    def __init__(self, rounds=None, title="Running shoes", delay: float = 0.0):
        self.rounds = list(rounds or [])
        self.title = title
        self.delay = delay
        self.bodies: list[dict] = []
        self.forward_bodies: list[dict] = []

    async def forward(self, body: dict) -> BackendResponse:
        self.forward_bodies.append(body)
        if self.title is None:
            return BackendResponse(ok=False, error="title model down")
        return BackendResponse(ok=True, data={"choices": [{"message": {"content": self.title}}]})

    async def forward_stream(self, body: dict):
        self.bodies.append(body)
        if not self.rounds:
            raise UpstreamUnavailable("no scripted round left")
        round_ = self.rounds.pop(0)
        if isinstance(round_, Exception):
            raise round_
        for line in round_:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield line

    async def health_check(self) -> bool:
        return True


def fake_redis():
    """An isolated in-memory Redis (call inside the test's event loop)."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


async def collect(events) -> list:
    return [e async for e in events]
