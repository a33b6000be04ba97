"""
Base backend abstraction.
The invoker and tools talk to the model through this interface only.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Standardized non-streaming response."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant content from response data."""
        choices = self.data.get("choices", [])
        if choices:
            return choices[0].get("message", {}).get("content") or ""
        return ""


class BaseBackend(abc.ABC):
    """Abstract base for chat-completion backends."""

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def forward(self, body: dict) -> BackendResponse:
        """
        Non-streaming chat completion. Body is OpenAI-compatible format.
        Never raises; failures come back as ok=False.
        """
        ...

    @abc.abstractmethod
    async def forward_stream(self, body: dict):
        """
        Streaming chat completion. Yields raw SSE lines (str).
        Raises UpstreamUnavailable if the backend cannot be reached or errors.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
