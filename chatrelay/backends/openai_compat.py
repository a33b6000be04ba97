"""
OpenAI-compatible chat backend.

Works with any endpoint implementing /v1/chat/completions with SSE
streaming: hosted gateways, vLLM, llama.cpp server, Ollama, LocalAI.
"""

from __future__ import annotations

import logging
import time

import httpx

from chatrelay.backends.base import BaseBackend, BackendResponse
from chatrelay.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(BaseBackend):
    """Backend for any service that implements /v1/chat/completions."""

    def __init__(self, name: str, url: str, timeout: int = 120, api_key: str = ""):
        super().__init__(name, url, timeout)
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def forward(self, body: dict) -> BackendResponse:
        """Forward a non-streaming request."""
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1/chat/completions",
                    json={**body, "stream": False},
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    data=resp.json(),
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=str(e),
            )

    async def forward_stream(self, body: dict):
        """Forward a streaming request, yielding non-empty SSE lines."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json={**body, "stream": True},
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode(errors="replace")[:200]
                        raise UpstreamUnavailable(f"HTTP {resp.status_code}: {detail}")
                    async for line in resp.aiter_lines():
                        if line:
                            yield line
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise UpstreamUnavailable(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise UpstreamUnavailable(str(e)) from e

    async def health_check(self) -> bool:
        """Check endpoint is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except Exception:
            return False
