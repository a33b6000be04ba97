"""
Resumable channels: durable, replayable per-turn event logs in Redis.

Layout per stream handle:
    {prefix}:{id}:events   Redis stream, one entry per event ({"data": json})
    {prefix}:{id}:state    "open" while the publisher runs, then "closed"

One writer (the publish task), any number of readers. Readers poll XRANGE
from their own cursor, so concurrent subscribers each see the full remaining
sequence. Event ids are the Redis stream ids and double as SSE ids, which is
how a reconnecting client resumes via Last-Event-ID.

The "open" state is a lease of lease_seconds, renewed on every append. If
the publisher dies the lease lapses, and readers that see no progress for
lease_seconds give up. Either way a reader always ends on a terminal event:
finish, or an error (timeout / upstream_unavailable) it synthesizes itself.

Without Redis the manager relays the source straight to the caller
(no resume). Generation still runs in its own task either way, so a client
disconnect never stops the turn from committing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from chatrelay.errors import Timeout, UpstreamUnavailable
from chatrelay.events import TERMINAL_TYPES, Failed

logger = logging.getLogger(__name__)

_STREAM_ID = re.compile(r"^\d+-\d+$")
_END = object()


@dataclass
class ChannelEvent:
    id: str
    data: dict = field(default_factory=dict)


Subscription = AsyncIterator[ChannelEvent]


def _valid_cursor(after: str | None) -> str | None:
    if after and _STREAM_ID.match(after):
        return after
    return None


class ResumableChannelManager:
    def __init__(
        self,
        client: aioredis.Redis | None = None,
        key_prefix: str = "chatrelay:stream",
        ttl_seconds: int = 86400,
        poll_interval: float = 0.05,
        lease_seconds: float = 90,
    ):
        self.redis = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    async def connect(cls, url: str | None, **kwargs) -> "ResumableChannelManager":
        """Build a manager from a Redis URL. Degrades (logged) if Redis is unusable."""
        if not url:
            logger.warning("No Redis URL configured; resumable streams disabled")
            return cls(None, **kwargs)
        client = aioredis.from_url(url, decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning("Redis unavailable at %s (%s); resumable streams disabled", url, e)
            await client.aclose()
            return cls(None, **kwargs)
        logger.info("Resumable streams enabled (redis=%s)", url)
        return cls(client, **kwargs)

    @property
    def available(self) -> bool:
        return self.redis is not None

    @property
    def _lease_ms(self) -> int:
        return max(int(self.lease_seconds * 1000), 1)

    def _events_key(self, handle_id: str) -> str:
        return f"{self.key_prefix}:{handle_id}:events"

    def _state_key(self, handle_id: str) -> str:
        return f"{self.key_prefix}:{handle_id}:state"

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream publisher failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, handle_id: str, source: AsyncIterator) -> Subscription:
        """
        Drain `source` into the channel for handle_id in a background task
        and return a subscription for the immediate caller.

        If the channel already exists (open or closed) nothing is written:
        the source is closed unconsumed and the caller is attached to the
        existing channel instead.
        """
        if self.redis is None:
            logger.warning("Stream %s is not resumable (no Redis); relaying directly", handle_id)
            return self._relay(source)

        try:
            claimed = await self.redis.set(self._state_key(handle_id), "open", nx=True, px=self._lease_ms)
        except RedisError as e:
            logger.warning("Redis error claiming stream %s (%s); relaying directly", handle_id, e)
            return self._relay(source)

        if not claimed:
            logger.info("Stream %s already published; attaching instead", handle_id)
            await source.aclose()
            return self._read(handle_id, None)

        self._track(asyncio.create_task(self._drain(handle_id, source)))
        return self._read(handle_id, None)

    async def _drain(self, handle_id: str, source: AsyncIterator):
        events_key = self._events_key(handle_id)
        state_key = self._state_key(handle_id)
        writable = True
        count = 0
        try:
            async for event in source:
                if not writable:
                    continue
                try:
                    async with self.redis.pipeline(transaction=False) as pipe:
                        pipe.xadd(events_key, {"data": json.dumps(event.to_dict(), ensure_ascii=False, default=str)})
                        pipe.pexpire(state_key, self._lease_ms)
                        pipe.expire(events_key, self.ttl_seconds)
                        await pipe.execute()
                    count += 1
                except RedisError as e:
                    # Keep consuming so the turn still finishes and commits.
                    logger.error("Redis write failed on stream %s after %d events: %s", handle_id, count, e)
                    writable = False
        finally:
            try:
                await self.redis.set(state_key, "closed", ex=self.ttl_seconds)
                await self.redis.expire(events_key, self.ttl_seconds)
            except RedisError as e:
                logger.error("Could not close stream %s: %s", handle_id, e)
            logger.debug("Stream %s closed (%d events)", handle_id, count)

    def _relay(self, source: AsyncIterator) -> Subscription:
        queue: asyncio.Queue = asyncio.Queue()

        async def pump():
            try:
                async for event in source:
                    await queue.put(event)
            finally:
                queue.put_nowait(_END)

        self._track(asyncio.create_task(pump()))
        return self._from_queue(queue)

    @staticmethod
    async def _from_queue(queue: asyncio.Queue) -> Subscription:
        seq = 0
        while True:
            event = await queue.get()
            if event is _END:
                return
            seq += 1
            yield ChannelEvent(str(seq), event.to_dict())

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(self, handle_id: str, after: str | None = None) -> Subscription | None:
        """
        Attach to an existing channel. Returns None when there is no such
        stream (or no Redis), so callers can show an informational state.
        """
        if self.redis is None:
            return None
        try:
            exists = await self.redis.exists(self._state_key(handle_id))
        except RedisError as e:
            logger.warning("Redis error looking up stream %s: %s", handle_id, e)
            return None
        if not exists:
            return None
        return self._read(handle_id, _valid_cursor(after))

    async def _range(self, handle_id: str, cursor: str | None) -> list:
        entries = await self.redis.xrange(self._events_key(handle_id), min=cursor or "-", max="+")
        if cursor and entries and entries[0][0] == cursor:
            entries = entries[1:]
        return entries

    def _abort(self, cursor: str | None, error: Exception) -> ChannelEvent:
        """Terminal error event for a reader whose channel ended abnormally."""
        return ChannelEvent(cursor or "", Failed.from_error(error).to_dict())

    async def _read(self, handle_id: str, cursor: str | None) -> Subscription:
        state_key = self._state_key(handle_id)
        loop = asyncio.get_running_loop()
        last_progress = loop.time()
        state = "open"
        try:
            while True:
                for entry_id, fields in await self._range(handle_id, cursor):
                    cursor = entry_id
                    last_progress = loop.time()
                    data = json.loads(fields["data"])
                    yield ChannelEvent(entry_id, data)
                    if data.get("type") in TERMINAL_TYPES:
                        return

                if state != "open":
                    break

                state = await self.redis.get(state_key)
                if state == "open":
                    idle = loop.time() - last_progress
                    if idle > self.lease_seconds:
                        logger.warning("Stream %s made no progress for %.1fs; giving up", handle_id, idle)
                        yield self._abort(cursor, Timeout(f"no events for {idle:.1f}s"))
                        return
                    await asyncio.sleep(self.poll_interval)
                # Not open: one more pass picks up anything appended before the close.
        except RedisError as e:
            logger.error("Redis read failed on stream %s at %s: %s", handle_id, cursor, e)
            yield self._abort(cursor, UpstreamUnavailable(f"stream read failed: {e}"))
            return

        if state is None:
            logger.warning("Stream %s lease expired before a terminal event", handle_id)
            yield self._abort(cursor, Timeout("publisher lease expired"))
        else:
            logger.warning("Stream %s closed without a terminal event", handle_id)
            yield self._abort(cursor, UpstreamUnavailable("stream closed early"))

    async def close(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.redis is not None:
            await self.redis.aclose()
