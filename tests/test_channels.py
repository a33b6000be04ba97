"""
Tests for resumable channels, against an in-memory Redis (fakeredis),
plus the degraded no-Redis passthrough.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatrelay.channels import ResumableChannelManager
from chatrelay.events import USER_ERROR_MESSAGE, Completed, TextDelta
from tests.helpers import collect, fake_redis


async def _turn(n=10, delay=0.0, finished=None):
    for i in range(1, n + 1):
        if delay:
            await asyncio.sleep(delay)
        yield TextDelta(f"w{i} ")
    yield Completed(message_id="m1")
    if finished is not None:
        finished.set()


def _manager(client=None):
    return ResumableChannelManager(client, key_prefix="test:stream", ttl_seconds=60, poll_interval=0.01)


@pytest.mark.asyncio
async def test_publish_delivers_everything_and_closes():
    redis = fake_redis()
    mgr = _manager(redis)

    events = await collect(await mgr.publish("s1", _turn(3)))
    await mgr.close()

    assert [e.data["type"] for e in events] == ["text-delta"] * 3 + ["finish"]
    assert events[-1].data["messageId"] == "m1"
    ids = [e.id for e in events]
    assert ids == sorted(ids, key=lambda i: tuple(map(int, i.split("-"))))
    assert len(set(ids)) == 4


@pytest.mark.asyncio
async def test_state_key_closed_after_drain():
    redis = fake_redis()
    mgr = _manager(redis)
    await collect(await mgr.publish("s1", _turn(2)))
    await mgr.close()

    assert await redis.get("test:stream:s1:state") == "closed"
    assert await redis.ttl("test:stream:s1:events") > 0


@pytest.mark.asyncio
async def test_resume_after_disconnect_gets_only_the_rest():
    redis = fake_redis()
    mgr = _manager(redis)

    live = await mgr.publish("s1", _turn(10, delay=0.01))
    received = []
    async for event in live:
        received.append(event)
        if len(received) == 3:
            break
    await live.aclose()
    cursor = received[-1].id

    resumed = await mgr.subscribe("s1", after=cursor)
    rest = await collect(resumed)
    await mgr.close()

    texts = [e.data.get("text") for e in received + rest if e.data["type"] == "text-delta"]
    assert texts == [f"w{i} " for i in range(1, 11)]
    assert [e.data.get("text") for e in rest[:1]] == ["w4 "]
    assert rest[-1].data["type"] == "finish"


@pytest.mark.asyncio
async def test_completed_stream_replays_identically():
    redis = fake_redis()
    mgr = _manager(redis)

    live = await collect(await mgr.publish("s1", _turn(5)))
    await mgr.close()

    later = await collect(await mgr.subscribe("s1"))
    assert [(e.id, e.data) for e in later] == [(e.id, e.data) for e in live]


@pytest.mark.asyncio
async def test_concurrent_subscribers_each_get_full_sequence():
    redis = fake_redis()
    mgr = _manager(redis)

    first = await mgr.publish("s1", _turn(6, delay=0.01))
    second = await mgr.subscribe("s1")
    a, b = await asyncio.gather(collect(first), collect(second))
    await mgr.close()

    assert [e.id for e in a] == [e.id for e in b]
    assert len(a) == 7


@pytest.mark.asyncio
async def test_garbage_cursor_replays_from_start():
    redis = fake_redis()
    mgr = _manager(redis)
    await collect(await mgr.publish("s1", _turn(2)))
    await mgr.close()

    events = await collect(await mgr.subscribe("s1", after="not-an-id"))
    assert len(events) == 3


@pytest.mark.asyncio
async def test_subscribe_unknown_stream_is_none():
    mgr = _manager(fake_redis())
    assert await mgr.subscribe("nope") is None


@pytest.mark.asyncio
async def test_second_publish_does_not_double_write():
    redis = fake_redis()
    mgr = _manager(redis)
    await collect(await mgr.publish("s1", _turn(2)))
    await mgr.close()

    consumed = False

    async def duplicate():
        nonlocal consumed
        consumed = True
        yield TextDelta("dup ")

    events = await collect(await mgr.publish("s1", duplicate()))
    assert not consumed
    assert len(events) == 3
    assert await redis.xlen("test:stream:s1:events") == 3


# ---------------------------------------------------------------------------
# Degraded mode
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_without_redis_relays_directly():
    mgr = _manager(None)
    assert not mgr.available

    events = await collect(await mgr.publish("s1", _turn(2)))
    assert [e.id for e in events] == ["1", "2", "3"]
    assert events[-1].data["type"] == "finish"
    assert await mgr.subscribe("s1") is None


@pytest.mark.asyncio
async def test_relay_keeps_generating_after_reader_leaves():
    finished = asyncio.Event()
    mgr = _manager(None)

    events = await mgr.publish("s1", _turn(5, delay=0.01, finished=finished))
    await events.__anext__()
    await events.aclose()

    await mgr.close()
    assert finished.is_set()


@pytest.mark.asyncio
async def test_redis_error_on_claim_falls_back():
    broken = MagicMock()
    broken.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    mgr = _manager(broken)

    events = await collect(await mgr.publish("s1", _turn(1)))
    assert [e.id for e in events] == ["1", "2"]


@pytest.mark.asyncio
async def test_connect_without_url_is_degraded():
    mgr = await ResumableChannelManager.connect("")
    assert not mgr.available


@pytest.mark.asyncio
async def test_connect_ping_failure_is_degraded():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("no route"))
    client.aclose = AsyncMock()
    with patch("chatrelay.channels.aioredis.from_url", return_value=client):
        mgr = await ResumableChannelManager.connect("redis://nowhere:6379")
    assert not mgr.available
    client.aclose.assert_awaited_once()


# ---------------------------------------------------------------------------
# Abnormal endings: a reader always finishes on a terminal event
# ---------------------------------------------------------------------------

async def _orphan(redis, state="open", n=2):
    """A channel whose publisher is gone: deltas written, no terminal event."""
    if state is not None:
        await redis.set("test:stream:s1:state", state)
    for word in ["a ", "b ", "c "][:n]:
        await redis.xadd("test:stream:s1:events", {"data": json.dumps({"type": "text-delta", "text": word})})


@pytest.mark.asyncio
async def test_open_channel_without_progress_times_out():
    redis = fake_redis()
    await _orphan(redis)
    mgr = ResumableChannelManager(redis, key_prefix="test:stream", ttl_seconds=60, poll_interval=0.01, lease_seconds=0.2)

    events = await asyncio.wait_for(collect(await mgr.subscribe("s1")), 2.0)

    assert [e.data.get("text") for e in events[:2]] == ["a ", "b "]
    assert events[-1].data["type"] == "error"
    assert events[-1].data["cause"] == "timeout"
    assert events[-1].id == events[1].id


@pytest.mark.asyncio
async def test_expired_lease_ends_attached_reader():
    redis = fake_redis()
    await _orphan(redis, n=1)
    mgr = _manager(redis)

    reader = await mgr.subscribe("s1")
    first = await reader.__anext__()
    await redis.delete("test:stream:s1:state")
    rest = await asyncio.wait_for(collect(reader), 2.0)

    assert first.data["text"] == "a "
    assert [e.data["type"] for e in rest] == ["error"]
    assert rest[0].data["cause"] == "timeout"


@pytest.mark.asyncio
async def test_closed_without_terminal_reports_upstream_failure():
    redis = fake_redis()
    await _orphan(redis, state="closed")
    mgr = _manager(redis)

    events = await asyncio.wait_for(collect(await mgr.subscribe("s1")), 2.0)

    assert [e.data["type"] for e in events] == ["text-delta", "text-delta", "error"]
    assert events[-1].data["cause"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_redis_error_mid_read_ends_with_error_event():
    redis = fake_redis()
    await _orphan(redis, n=1)
    mgr = _manager(redis)

    reader = await mgr.subscribe("s1")
    first = await reader.__anext__()
    with patch.object(redis, "get", AsyncMock(side_effect=RedisConnectionError("gone"))):
        rest = await asyncio.wait_for(collect(reader), 2.0)

    assert [e.data["type"] for e in rest] == ["error"]
    assert rest[0].data["cause"] == "upstream_unavailable"
    assert rest[0].data["message"] == USER_ERROR_MESSAGE
    assert rest[0].id == first.id


@pytest.mark.asyncio
async def test_publisher_holds_lease_while_writing():
    redis = fake_redis()
    mgr = ResumableChannelManager(redis, key_prefix="test:stream", ttl_seconds=60, poll_interval=0.01, lease_seconds=5)

    live = await mgr.publish("s1", _turn(5, delay=0.01))
    await live.__anext__()
    lease_ms = await redis.pttl("test:stream:s1:state")
    assert await redis.get("test:stream:s1:state") == "open"
    assert 0 < lease_ms <= 5000

    rest = await collect(live)
    await mgr.close()
    assert rest[-1].data["type"] == "finish"
    assert await redis.get("test:stream:s1:state") == "closed"
