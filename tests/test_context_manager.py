"""Tests for conversation history and context window assembly."""

import pytest

from conversation.ContextManager import (
    SUMMARY_PREFIX,
    ContextManager,
    calculate_efficiency,
    needs_summarization,
    validate_message,
)
from conversation.models import TokenLimits
from conversation.summary import create_conversation_summary, detect_tone, extract_topics
from conversation.TokenEstimator import HeuristicTokenEstimator, get_estimator
from storage.records import Message


def _conversation_with(manager, contents):
    conversation = manager.create_conversation("u1", "luna")
    roles = ("user", "assistant")
    for index, content in enumerate(contents):
        manager.add_message_to_context(conversation.id, roles[index % 2], content)
    return conversation


def test_heuristic_estimator():
    estimator = HeuristicTokenEstimator()
    assert estimator.estimate("") == 0
    assert estimator.estimate("abcd") == 1
    assert estimator.estimate("abcde") == 2


def test_unknown_estimator_name():
    with pytest.raises(ValueError):
        get_estimator("characters")


def test_short_history_fits_without_truncation(storage):
    manager = ContextManager(storage)
    conversation = _conversation_with(manager, ["Hi Luna!", "Hello there!", "How was the show?"])

    prepared = manager.prepare_ai_context(conversation.id, "You are Luna.")
    assert prepared.messages == [
        {"role": "system", "content": "You are Luna."},
        {"role": "user", "content": "Hi Luna!"},
        {"role": "assistant", "content": "Hello there!"},
        {"role": "user", "content": "How was the show?"},
    ]
    assert prepared.context_info.truncated is False
    assert prepared.context_info.message_count == 3


def test_window_keeps_newest_messages_within_budget(storage):
    limits = TokenLimits(max_context_tokens=200, system_prompt_tokens=50, response_tokens=50)
    manager = ContextManager(storage, limits)
    contents = [f"message {i:02d} ".ljust(40, ".") for i in range(20)]
    conversation = _conversation_with(manager, contents)

    context = manager.get_conversation_context(conversation.id)
    window = manager.create_context_window(context.messages)

    assert window.truncated is True
    assert window.summary_used is False
    assert window.total_tokens <= limits.available
    assert [m.content for m in window.messages] == contents[-10:]


def test_window_never_exceeds_budget_for_any_size(storage):
    limits = TokenLimits(max_context_tokens=300, system_prompt_tokens=50, response_tokens=50)
    manager = ContextManager(storage, limits)
    conversation = _conversation_with(manager, ["x" * (i * 13 % 170 + 1) for i in range(40)])
    messages = manager.get_conversation_context(conversation.id).messages

    for end in range(1, len(messages) + 1):
        window = manager.create_context_window(messages[:end])
        assert window.total_tokens <= limits.available
        kept = [m for m in window.messages if not m.metadata.get("isSummary")]
        assert kept == messages[end - len(kept):end]


def test_heavy_truncation_adds_summary(storage):
    limits = TokenLimits(max_context_tokens=1200, system_prompt_tokens=100, response_tokens=100)
    manager = ContextManager(storage, limits)
    conversation = _conversation_with(manager, ["a" * 3200] * 4)

    messages = manager.get_conversation_context(conversation.id).messages
    window = manager.create_context_window(messages)
    summary = window.messages[0]

    assert window.truncated is True
    assert window.summary_used is True
    assert summary.role == "system"
    assert summary.metadata == {"isSummary": True}
    assert summary.content.startswith(SUMMARY_PREFIX)
    assert window.messages[1:] == messages[-1:]
    assert window.total_tokens <= limits.available


def test_summary_goes_into_system_prompt(storage):
    limits = TokenLimits(max_context_tokens=1200, system_prompt_tokens=100, response_tokens=100)
    manager = ContextManager(storage, limits)
    conversation = _conversation_with(manager, ["a" * 3200] * 4)

    prepared = manager.prepare_ai_context(conversation.id, "You are Luna.")
    assert prepared.context_info.summary_used is True
    assert [m["role"] for m in prepared.messages] == ["system", "assistant"]
    assert prepared.messages[0]["content"].startswith("You are Luna.\n\n" + SUMMARY_PREFIX)


def test_no_summary_when_budget_is_too_small(storage):
    limits = TokenLimits(max_context_tokens=200, system_prompt_tokens=50, response_tokens=50)
    manager = ContextManager(storage, limits)
    conversation = _conversation_with(manager, ["b" * 240] * 5)

    window = manager.create_context_window(
        manager.get_conversation_context(conversation.id).messages
    )
    assert window.truncated is True
    assert window.summary_used is False
    assert len(window.messages) == 1


def test_added_message_comes_back_last(storage):
    manager = ContextManager(storage)
    conversation = _conversation_with(manager, ["Hi!", "Hey!"])
    stored = manager.add_message_to_context(
        conversation.id, "user", "  spacing kept  ", {"source": "test"}
    )

    assert stored.tokens == HeuristicTokenEstimator().estimate("  spacing kept  ")
    prepared = manager.prepare_ai_context(conversation.id, "sys")
    assert prepared.messages[-1] == {"role": "user", "content": "  spacing kept  "}


def test_hidden_messages_leave_the_context(storage):
    manager = ContextManager(storage)
    conversation = _conversation_with(manager, ["first", "second"])
    secret = manager.add_message_to_context(conversation.id, "user", "my secret")

    assert manager.hide_message(secret.id) is True
    prepared = manager.prepare_ai_context(conversation.id, "sys")
    assert all(m["content"] != "my secret" for m in prepared.messages)
    assert manager.hide_message("missing") is False

    assert secret.id not in [m.id for m in manager.list_messages(conversation.id)]
    everything = manager.list_messages(conversation.id, include_hidden=True)
    assert [m.hidden for m in everything if m.id == secret.id] == [True]


def test_message_can_be_stored_under_a_given_id(storage):
    manager = ContextManager(storage)
    conversation = _conversation_with(manager, [])
    stored = manager.add_message_to_context(conversation.id, "user", "hi", message_id="m-42")

    assert stored.id == "m-42"
    assert [m.id for m in manager.list_messages(conversation.id)] == ["m-42"]


def test_system_messages_are_not_sent_as_turns(storage):
    manager = ContextManager(storage)
    conversation = _conversation_with(manager, ["hello"])
    manager.add_message_to_context(conversation.id, "system", "internal note")

    prepared = manager.prepare_ai_context(conversation.id, "sys")
    assert [m["content"] for m in prepared.messages] == ["sys", "hello"]


def test_unknown_role_is_rejected(memory_storage):
    manager = ContextManager(memory_storage)
    conversation = manager.create_conversation("u1", "luna")
    with pytest.raises(ValueError):
        manager.add_message_to_context(conversation.id, "tool", "x")


def test_unknown_conversation(memory_storage):
    manager = ContextManager(memory_storage)
    assert manager.prepare_ai_context("missing", "sys") is None
    assert manager.get_conversation_context("missing") is None
    assert manager.add_message_to_context("missing", "user", "hi") is None


def test_long_conversations_get_a_stored_summary(storage):
    manager = ContextManager(storage)
    short = _conversation_with(manager, ["Can you help with vocals?", "Sure!"])
    assert manager.update_conversation_summary(short.id) is False

    long = _conversation_with(manager, ["Tell me about the tour please"] + ["ok"] * 21)
    assert manager.update_conversation_summary(long.id) is True
    summary = manager.get_conversation(long.id).summary
    assert "Topics discussed: the tour please" in summary


def test_summary_helpers():
    messages = [
        Message("c1", "user", "Can you explain the new album?"),
        Message("c1", "assistant", "Of course!"),
        Message("c1", "user", "Thank you so much"),
    ]
    assert extract_topics(messages[::2]) == ["explain the new", "the new album?"]
    assert detect_tone(messages) == "polite"

    summary = create_conversation_summary(messages)
    assert summary.startswith("Conversation involved 2 user messages and 1 responses.")
    assert summary.endswith('Last user topic: "Thank you so much"')
    assert create_conversation_summary([]) == ""


def test_module_helpers(memory_storage):
    limits = TokenLimits()
    assert limits.available == 3000
    assert needs_summarization(21, 0) and needs_summarization(1, 3001)
    assert not needs_summarization(20, 3000)
    assert validate_message("", limits) == (False, "Empty content")
    assert validate_message("x" * 4001, limits) == (False, "Message too long")
    assert validate_message("hi", limits) == (True, None)

    manager = ContextManager(memory_storage, limits)
    window = manager.create_context_window([Message("c1", "user", "x" * 400)])
    assert calculate_efficiency(window, limits) == 100 / 4000
