"""
Tests for SQLite storage.
Uses a temp database for each test.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.storage.models import Conversation, Document, Message, StreamHandle
from chatrelay.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


def _msg(conv_id, role="user", text="hi", **kw):
    return Message(conversation_id=conv_id, role=role, parts=[{"type": "text", "text": text}], **kw)


def test_conversation_roundtrip(store):
    store.save_conversation(Conversation(id="c1", user_id="u1", title="Shoes"))
    conv = store.get_conversation("c1")
    assert conv.user_id == "u1"
    assert conv.title == "Shoes"
    assert conv.visibility == "private"
    assert store.get_conversation("missing") is None


def test_readable_by():
    private = Conversation(id="c", user_id="owner")
    public = Conversation(id="c", user_id="owner", visibility="public")
    assert private.readable_by("owner")
    assert not private.readable_by("someone-else")
    assert public.readable_by("someone-else")


def test_messages_ordered_by_created_at(store):
    store.save_conversation(Conversation(id="c1", user_id="u1"))
    now = datetime.now(timezone.utc)
    late = _msg("c1", text="second", created_at=(now + timedelta(seconds=1)).isoformat(timespec="microseconds"))
    early = _msg("c1", text="first", created_at=now.isoformat(timespec="microseconds"))
    store.save_messages([late, early])

    texts = [m.text for m in store.get_messages("c1")]
    assert texts == ["first", "second"]


def test_parts_and_attachments_survive(store):
    store.save_conversation(Conversation(id="c1", user_id="u1"))
    msg = Message(
        conversation_id="c1",
        role="assistant",
        parts=[{"type": "reasoning", "reasoning": "hmm"}, {"type": "text", "text": "ok"}],
        attachments=[{"url": "http://x/a.png", "name": "a.png", "contentType": "image/png"}],
    )
    store.save_messages([msg])
    got = store.get_message(msg.id)
    assert got.parts == msg.parts
    assert got.attachments == msg.attachments
    assert got.text == "ok"


def test_duplicate_message_id_rejected(store):
    store.save_conversation(Conversation(id="c1", user_id="u1"))
    msg = _msg("c1")
    store.save_messages([msg])
    with pytest.raises(sqlite3.IntegrityError):
        store.save_messages([msg])
    assert len(store.get_messages("c1")) == 1


def test_count_user_messages_window(store):
    store.save_conversation(Conversation(id="mine", user_id="u1"))
    store.save_conversation(Conversation(id="theirs", user_id="u2"))
    old = (datetime.now(timezone.utc) - timedelta(hours=25)).isoformat(timespec="microseconds")

    store.save_messages([
        _msg("mine"),
        _msg("mine"),
        _msg("mine", role="assistant"),
        _msg("mine", created_at=old),
        _msg("theirs"),
    ])
    assert store.count_user_messages("u1") == 2
    assert store.count_user_messages("u2") == 1
    assert store.count_user_messages("nobody") == 0


def test_stream_ids_oldest_first(store):
    store.save_conversation(Conversation(id="c1", user_id="u1"))
    first = StreamHandle(conversation_id="c1")
    second = StreamHandle(conversation_id="c1")
    store.create_stream(first)
    store.create_stream(second)
    assert store.get_stream_ids("c1") == [first.id, second.id]
    assert store.get_stream_ids("other") == []


def test_delete_conversation_cascades(store):
    store.save_conversation(Conversation(id="c1", user_id="u1", title="bye"))
    store.save_messages([_msg("c1")])
    store.create_stream(StreamHandle(conversation_id="c1"))

    deleted = store.delete_conversation("c1")
    assert deleted.title == "bye"
    assert store.get_conversation("c1") is None
    assert store.get_messages("c1") == []
    assert store.get_stream_ids("c1") == []
    assert store.delete_conversation("c1") is None


def test_document_versions_append(store):
    v1 = Document(id="d1", user_id="u1", title="Plan", content="draft", created_at="2025-01-01T00:00:00.000000+00:00")
    v2 = Document(id="d1", user_id="u1", title="Plan", content="final", created_at="2025-01-02T00:00:00.000000+00:00")
    store.save_document(v1)
    store.save_document(v2)
    assert store.get_stats()["documents"] == 2
    with pytest.raises(sqlite3.IntegrityError):
        store.save_document(v2)


def test_stats(store):
    store.save_conversation(Conversation(id="c1", user_id="u1"))
    store.save_messages([_msg("c1"), _msg("c1", role="assistant")])
    store.create_stream(StreamHandle(conversation_id="c1"))
    assert store.get_stats() == {"conversations": 1, "messages": 2, "streams": 1, "documents": 0}
