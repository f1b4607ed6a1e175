"""Tests for the storage backends behind the storage port."""

import tempfile
from pathlib import Path

import pytest

from storage.DatabaseProvider import DatabaseProvider
from storage.records import Conversation, Message, ModerationLog
from storage.SqliteStorage import SqliteStorage
from storage.StoragePort import StorageError


def test_atomic_increment_stops_at_limit(storage):
    counts = [storage.atomic_increment("u1", "chat-send", 0, 3) for _ in range(5)]
    assert counts == [1, 2, 3, None, None]
    assert storage.get_window("u1", "chat-send", 0).request_count == 3


def test_windows_are_keyed_by_subject_endpoint_and_start(storage):
    storage.atomic_increment("u1", "chat-send", 0, 1)
    assert storage.atomic_increment("u2", "chat-send", 0, 1) == 1
    assert storage.atomic_increment("u1", "chat-session", 0, 1) == 1
    assert storage.atomic_increment("u1", "chat-send", 60_000, 1) == 1
    assert storage.atomic_increment("u1", "chat-send", 0, 1) is None


def test_delete_before_only_touches_old_windows(storage):
    for start in (0, 60_000, 120_000):
        storage.atomic_increment("u1", "chat-send", start, 10)
    storage.atomic_increment("u2", "chat-send", 0, 10)

    assert storage.delete_before("u1", "chat-send", 120_000) == 2
    assert storage.get_window("u1", "chat-send", 0) is None
    assert storage.get_window("u1", "chat-send", 120_000) is not None
    assert storage.get_window("u2", "chat-send", 0) is not None


def test_list_windows_newest_first(storage):
    for start in (0, 60_000, 120_000):
        storage.atomic_increment("u1", "chat-send", start, 10)
    windows = storage.list_windows("u1", since=60_000)
    assert [w.window_start for w in windows] == [120_000, 60_000]


def test_block_marker_expires(storage):
    storage.set_block("u1", "chat-send", 5_000)
    assert storage.get_block("u1", "chat-send", 4_999) == 5_000
    assert storage.get_block("u1", "chat-send", 5_000) is None
    assert storage.get_block("u2", "chat-send", 0) is None


def test_moderation_log_round_trip_and_appeal(storage):
    log = storage.insert_moderation_log(
        ModerationLog(action="flagged", confidence=0.6, categories=["mild_profanity"], subject_id="u1")
    )
    assert storage.mark_appealed(log.id) is True
    assert storage.mark_appealed(log.id) is True
    assert storage.mark_appealed("missing") is False

    [stored] = storage.list_moderation_logs()
    assert stored.id == log.id
    assert stored.categories == ["mild_profanity"]
    assert stored.appealed is True


def test_moderation_logs_filter_by_action(storage):
    storage.insert_moderation_log(ModerationLog(action="flagged", confidence=0.6, created_at=1))
    storage.insert_moderation_log(ModerationLog(action="blocked", confidence=0.9, created_at=2))
    storage.insert_moderation_log(ModerationLog(action="blocked", confidence=1.0, created_at=3))

    blocked = storage.list_moderation_logs(action="blocked")
    assert [log.created_at for log in blocked] == [3, 2]
    assert len(storage.list_moderation_logs(since=2, until=2)) == 1
    assert len(storage.list_moderation_logs(limit=1)) == 1


def test_moderation_logs_scoped_to_subject(storage):
    alice = storage.insert_moderation_log(
        ModerationLog(action="flagged", confidence=0.6, subject_id="alice")
    )
    storage.insert_moderation_log(ModerationLog(action="flagged", confidence=0.6, subject_id="bob"))

    assert [log.id for log in storage.list_moderation_logs(subject_id="alice")] == [alice.id]
    assert storage.list_moderation_logs(subject_id="carol") == []

    assert storage.mark_appealed(alice.id, subject_id="bob") is False
    assert storage.list_moderation_logs(subject_id="alice")[0].appealed is False
    assert storage.mark_appealed(alice.id, subject_id="alice") is True
    assert storage.list_moderation_logs(subject_id="alice")[0].appealed is True


def test_messages_keep_insertion_order_and_hidden_flag(storage):
    conversation = storage.create_conversation(Conversation(user_id="u1", character_id="luna"))
    first = storage.append_message(
        Message(conversation.id, "user", "hi", tokens=1, metadata={"k": "v"}, created_at=10)
    )
    second = storage.append_message(Message(conversation.id, "assistant", "hello", created_at=10))

    messages = storage.list_messages(conversation.id)
    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[0].metadata == {"k": "v"}

    assert storage.set_message_hidden(first.id) is True
    assert [m.id for m in storage.list_messages(conversation.id)] == [second.id]
    assert len(storage.list_messages(conversation.id, include_hidden=True)) == 2
    assert storage.set_message_hidden("missing") is False


def test_append_to_unknown_conversation_fails(storage):
    with pytest.raises(StorageError):
        storage.append_message(Message("missing", "user", "hi"))


def test_conversation_summary(storage):
    conversation = storage.create_conversation(Conversation(user_id="u1", character_id="luna"))
    assert storage.set_conversation_summary(conversation.id, "short chat") is True
    assert storage.get_conversation(conversation.id).summary == "short chat"
    assert storage.set_conversation_summary("missing", "x") is False
    assert storage.get_conversation("missing") is None


def test_duplicate_conversation_id_fails(storage):
    conversation = storage.create_conversation(Conversation(user_id="u1", character_id="luna"))
    with pytest.raises(StorageError):
        storage.create_conversation(
            Conversation(user_id="u2", character_id="luna", id=conversation.id)
        )


def test_file_database_persists_across_connections():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = str(Path(tmpdir) / "nested" / "chat.db")

        provider = DatabaseProvider(db_path)
        SqliteStorage(provider.get_connection()).atomic_increment("u1", "chat-send", 0, 10)
        provider.close()

        provider = DatabaseProvider(db_path)
        storage = SqliteStorage(provider.get_connection())
        assert storage.atomic_increment("u1", "chat-send", 0, 10) == 2
        provider.close()


def test_closed_connection_raises_storage_error():
    provider = DatabaseProvider()
    storage = SqliteStorage(provider.get_connection())
    provider.close()
    with pytest.raises(StorageError):
        storage.get_window("u1", "chat-send", 0)
