"""Tests for maki.store.ThreadStore on a temporary SQLite file."""

import sqlite3

import pytest

from maki.errors import ErrorKind, PersistenceError
from maki.history import Message, ToolCall
from maki.store import ThreadStore


@pytest.fixture
def store(tmp_path):
    return ThreadStore(tmp_path / "threads.db")


def test_create_and_get_empty_thread(store):
    thread_id = store.create_thread()
    thread = store.get_thread(thread_id)
    assert thread.id == thread_id
    assert thread.title is None
    assert thread.messages == []


def test_get_missing_thread_returns_none(store):
    assert store.get_thread("nope") is None


def test_messages_round_trip_in_order(store):
    thread_id = store.create_thread()
    call = ToolCall("c1", "read_file", '{"path": "notes.txt"}')
    messages = [
        Message.user("read my notes"),
        Message.assistant(None, [call]),
        Message.tool("c1", "read_file", '{"content": "hello"}'),
        Message.assistant("Your notes say hello."),
    ]
    for msg in messages:
        store.save_message(thread_id, msg)
    assert store.get_thread(thread_id).messages == messages


def test_add_message_with_extra(store):
    thread_id = store.create_thread()
    store.add_message(thread_id, "user", "hi")
    store.add_message(thread_id, "tool", "{}", {"tool_call_id": "x", "tool_name": "think"})
    msgs = store.get_thread(thread_id).messages
    assert msgs[0] == Message.user("hi")
    assert msgs[1].tool_call_id == "x"
    assert msgs[1].tool_name == "think"


def test_list_threads_counts_and_orders_by_activity(store):
    first = store.create_thread()
    second = store.create_thread()
    store.add_message(first, "user", "bump")
    threads = store.list_threads()
    assert [t.id for t in threads] == [first, second]
    assert threads[0].message_count == 1
    assert threads[1].message_count == 0
    assert threads[1].label == "Untitled thread"


def test_update_title(store):
    thread_id = store.create_thread()
    store.update_thread_title(thread_id, "CSV cleanup")
    assert store.get_thread(thread_id).title == "CSV cleanup"
    assert store.list_threads()[0].label == "CSV cleanup"


def test_delete_cascades_to_messages(store, tmp_path):
    thread_id = store.create_thread()
    store.add_message(thread_id, "user", "hi")
    store.delete_thread(thread_id)
    assert store.get_thread(thread_id) is None
    assert store.list_threads() == []
    conn = sqlite3.connect(tmp_path / "threads.db")
    try:
        assert conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0
    finally:
        conn.close()


def test_delete_missing_thread_raises(store):
    with pytest.raises(PersistenceError) as exc_info:
        store.delete_thread("missing")
    assert exc_info.value.kind is ErrorKind.PERSISTENCE


def test_add_to_missing_thread_raises(store):
    with pytest.raises(PersistenceError):
        store.add_message("missing", "user", "hi")


def test_batch_append_is_atomic(store):
    thread_id = store.create_thread()
    with pytest.raises(PersistenceError):
        # a None role violates NOT NULL on the second row
        store.add_messages(thread_id, [("user", "one", None), (None, "two", None)])
    assert store.get_thread(thread_id).messages == []


def test_truncate_keeps_prefix(store):
    thread_id = store.create_thread()
    other = store.create_thread()
    store.save_message(other, Message.user("untouched"))
    for msg in [
        Message.user("question"),
        Message.assistant("answer"),
        Message.user("crashed"),
        Message.assistant(None, [ToolCall("a1", "list_files", "{}")]),
    ]:
        store.save_message(thread_id, msg)
    assert store.truncate_messages(thread_id, 2) == 2
    assert store.get_thread(thread_id).messages == [
        Message.user("question"),
        Message.assistant("answer"),
    ]
    assert store.get_thread(other).messages == [Message.user("untouched")]
    assert store.truncate_messages(thread_id, 2) == 0
    assert store.truncate_messages(thread_id, 0) == 2
    assert store.get_thread(thread_id).messages == []


def test_truncate_missing_thread_raises(store):
    with pytest.raises(PersistenceError):
        store.truncate_messages("missing", 0)


def test_survives_reopen(tmp_path):
    path = tmp_path / "threads.db"
    thread_id = ThreadStore(path).create_thread()
    ThreadStore(path).add_message(thread_id, "user", "persisted")
    assert ThreadStore(path).get_thread(thread_id).messages == [Message.user("persisted")]


def test_unopenable_database_raises_persistence_error(tmp_path):
    (tmp_path / "dir.db").mkdir()
    with pytest.raises(PersistenceError):
        ThreadStore(tmp_path / "dir.db")
