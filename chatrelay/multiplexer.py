"""
Stream multiplexer: merges invoker events and tool side effects into one
ordered stream, smoothing text into word-sized chunks.

The invoker runs in a pump task that feeds a single queue. Tools push their
side effects into the same queue through the sink, so a side effect always
lands between its ToolCallRequested and ToolResult. The whole generation is
bounded by max_duration_seconds; on expiry the stream ends with
Failed("timeout").
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator, Callable

from chatrelay.errors import Timeout, UpstreamUnavailable
from chatrelay.events import Failed, TextDelta, is_terminal

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\S+\s+")
_DONE = object()


class StreamMultiplexer:
    def __init__(self, chunk_delay_ms: int = 10, max_duration_seconds: float = 60):
        self.chunk_delay = max(chunk_delay_ms, 0) / 1000.0
        self.max_duration = max_duration_seconds

    async def _pump(self, invoke: Callable, queue: asyncio.Queue):
        async def drain():
            async for event in invoke(queue.put_nowait):
                await queue.put(event)
                if is_terminal(event):
                    return

        try:
            await asyncio.wait_for(drain(), timeout=self.max_duration)
        except asyncio.TimeoutError:
            logger.warning("Generation exceeded %.0fs, aborting", self.max_duration)
            await queue.put(Failed.from_error(Timeout(f"exceeded {self.max_duration}s")))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Generation failed: %s", e, exc_info=True)
            await queue.put(Failed.from_error(UpstreamUnavailable(str(e))))
        finally:
            queue.put_nowait(_DONE)

    async def stream(self, invoke: Callable) -> AsyncIterator:
        """
        Run `invoke(sink)` and yield the merged event stream.

        `invoke` receives the side-effect sink and must return the invoker's
        async iterator. The stream ends after the first terminal event.
        """
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(invoke, queue))
        buffer = ""
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break

                if isinstance(event, TextDelta):
                    buffer += event.text
                    while True:
                        match = _WORD.search(buffer)
                        if match is None:
                            break
                        chunk = buffer[:match.end()]
                        buffer = buffer[match.end():]
                        yield TextDelta(chunk)
                        if self.chunk_delay:
                            await asyncio.sleep(self.chunk_delay)
                    continue

                if buffer:
                    yield TextDelta(buffer)
                    buffer = ""
                yield event
                if is_terminal(event):
                    break

            if buffer:
                yield TextDelta(buffer)
        finally:
            if not pump.done():
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
