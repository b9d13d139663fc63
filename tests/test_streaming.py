"""Test suite for folding streamed responses into the conversation state."""

import json
from functools import reduce

import pytest

from chat_state_sync.domain.models import Message
from chat_state_sync.services.streaming import (
    ERROR_MESSAGE_TEXT,
    MAX_CONTEXT_MESSAGES,
    GenerationState,
    StreamingResponseFolder,
    build_context_window,
    fold_chunk,
)
from chat_state_sync.services.notifications import Severity

from conftest import ScriptedProvider


def loading_watcher(store, violations):
    """Listener asserting at most one loading message per conversation."""

    def check(s):
        for conversation in s.conversations:
            loading = [m for m in conversation.messages if m.is_loading]
            if len(loading) > 1:
                violations.append((conversation.id, [m.id for m in loading]))

    store.subscribe(check)


def test_fold_is_independent_of_chunking():
    """Test that the folded text does not depend on chunk boundaries."""
    chunked = reduce(fold_chunk, ["Hel", "lo", " world"], "")
    whole = reduce(fold_chunk, ["Hello world"], "")
    assert chunked == whole == "Hello world"


def test_context_window_keeps_latest_twenty_in_order():
    """Test the context window on a long history."""
    prior = [
        Message(id=f"m{i}", role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
        for i in range(25)
    ]
    turns = build_context_window(prior, "turn 25")
    assert MAX_CONTEXT_MESSAGES == 20
    assert len(turns) == 21
    assert [t.content for t in turns] == [f"turn {i}" for i in range(5, 26)]
    assert turns[0].role == "assistant"
    assert turns[-1].role == "user"


def test_context_window_with_short_history():
    """Test the context window on a short history."""
    turns = build_context_window([], "first")
    assert [(t.role, t.content) for t in turns] == [("user", "first")]


@pytest.mark.asyncio
async def test_send_message_streams_into_placeholder(make_store):
    """Test that replies stream into a loading placeholder."""
    store = make_store(authenticated=False)
    frames = []
    store.subscribe(
        lambda s: frames.append(
            [(m.role, m.content, m.is_loading) for m in s.current_conversation.messages]
            if s.current_conversation
            else []
        )
    )

    reply = await store.send_message("Plan my weekend")

    conversation = store.current_conversation
    assert conversation.title == "Plan my weekend"
    assert [(m.role, m.content, m.is_loading) for m in conversation.messages] == [
        ("user", "Plan my weekend", False),
        ("assistant", "Hello there", False),
    ]
    assert reply.id == conversation.messages[-1].id
    assert store.is_generating is False

    assistant_frames = [f[-1] for f in frames if len(f) == 2 and f[-1][0] == "assistant"]
    assert assistant_frames[0] == ("assistant", "", True)
    assert ("assistant", "Hello", True) in assistant_frames
    assert assistant_frames[-1] == ("assistant", "Hello there", False)


@pytest.mark.asyncio
async def test_blank_message_is_ignored(make_store, provider):
    """Test sending a blank message."""
    store = make_store(authenticated=False)
    assert await store.send_message("   \n") is None
    assert store.conversations == ()
    assert provider.requests == []


@pytest.mark.asyncio
async def test_completion_attaches_sources_and_persists(make_store, database, notifier):
    """Test that a finished reply keeps its sources and is saved."""
    provider = ScriptedProvider(chunks=["Lisbon", " is lovely"], sources=["https://a.example", "https://b.example"])
    store = make_store(provider=provider)
    await store.initialize()

    reply = await store.send_message("Where to go in May?")

    assert reply.sources == ["https://a.example", "https://b.example"]
    assert reply.is_loading is False
    rows = await database.messages.list(order_by="timestamp")
    assert [(r["role"], r["content"]) for r in rows] == [
        ("user", "Where to go in May?"),
        ("assistant", "Lisbon is lovely"),
    ]
    assert json.loads(rows[1]["sources"]) == ["https://a.example", "https://b.example"]
    assert notifier.notifications == []
    assert provider.searches == [True]


@pytest.mark.asyncio
async def test_reply_without_sources_has_none(make_store):
    """Test a reply with no citations."""
    store = make_store(authenticated=False)
    reply = await store.send_message("hi")
    assert reply.sources is None


@pytest.mark.asyncio
async def test_persist_failure_keeps_completed_message(make_store, database, notifier):
    """Test that a failed save keeps the finished reply."""
    store = make_store()
    await store.initialize()
    database.messages.fail["create"] = (2,)

    reply = await store.send_message("hello")

    assert reply.content == "Hello there"
    assert store.current_conversation.messages[-1] == reply
    assert notifier.notifications == [
        ("Warning", "Failed to save response to database.", Severity.DESTRUCTIVE)
    ]


@pytest.mark.asyncio
async def test_failure_before_first_chunk_replaces_placeholder(make_store, notifier):
    """Test a generation failing before any text arrives."""
    store = make_store(authenticated=False, provider=ScriptedProvider(fail_after=0))
    violations = []
    loading_watcher(store, violations)

    reply = await store.send_message("hello")

    messages = store.current_conversation.messages
    assert [(m.role, m.content, m.is_loading) for m in messages] == [
        ("user", "hello", False),
        ("assistant", ERROR_MESSAGE_TEXT, False),
    ]
    assert reply.content == ERROR_MESSAGE_TEXT
    assert notifier.notifications == [("Error", "Failed to generate response", Severity.DESTRUCTIVE)]
    assert store.is_generating is False
    assert violations == []


@pytest.mark.asyncio
async def test_failure_mid_stream_keeps_partial_text(make_store, notifier):
    """Test a generation failing partway through."""
    store = make_store(authenticated=False, provider=ScriptedProvider(chunks=["Par", "tial", "!"], fail_after=2))

    await store.send_message("hello")

    messages = store.current_conversation.messages
    assert [(m.role, m.content, m.is_loading) for m in messages] == [
        ("user", "hello", False),
        ("assistant", "Partial", False),
        ("assistant", ERROR_MESSAGE_TEXT, False),
    ]
    assert notifier.titles == ["Error"]


@pytest.mark.asyncio
async def test_error_message_is_not_persisted(make_store, database):
    """Test that the error message is never saved."""
    store = make_store(provider=ScriptedProvider(fail_after=0))
    await store.initialize()

    await store.send_message("hello")

    rows = await database.messages.list()
    assert [r["role"] for r in rows] == ["user"]


@pytest.mark.asyncio
async def test_empty_generation_is_a_failure(make_store, notifier):
    """Test a generation that produces no text."""
    store = make_store(authenticated=False, provider=ScriptedProvider(chunks=[], final_text=""))

    reply = await store.send_message("hello")

    assert reply.content == ERROR_MESSAGE_TEXT
    assert notifier.titles == ["Error"]


@pytest.mark.asyncio
async def test_final_text_used_when_nothing_streamed(make_store):
    """Test falling back to the final text."""
    store = make_store(authenticated=False, provider=ScriptedProvider(chunks=[], final_text="All at once"))

    reply = await store.send_message("hello")

    assert reply.content == "All at once"
    assert reply.is_loading is False


@pytest.mark.asyncio
async def test_context_window_sent_to_provider(make_store, provider):
    """25 prior messages plus the new one produce a 21-entry request."""
    store = make_store(authenticated=False)
    conversation = await store.create_conversation()
    for i in range(25):
        store.append_local_message(
            conversation.id,
            Message(id=f"m{i}", role="user" if i % 2 == 0 else "assistant", content=f"turn {i}"),
        )

    await store.send_message("turn 25")

    request = provider.requests[0]
    assert len(request) == 21
    assert [t.content for t in request] == [f"turn {i}" for i in range(5, 26)]
    # Not the first message, so the title stays.
    assert store.current_conversation.title == "New Chat"


@pytest.mark.asyncio
async def test_sequential_sends_never_overlap_loading(make_store):
    """Test that at most one message is loading at a time."""
    store = make_store(authenticated=False)
    violations = []
    loading_watcher(store, violations)

    for text in ["one", "two", "three"]:
        await store.send_message(text)

    messages = store.current_conversation.messages
    assert [m.role for m in messages] == ["user", "assistant"] * 3
    assert not any(m.is_loading for m in messages)
    assert violations == []


@pytest.mark.asyncio
async def test_folder_ignores_chunks_outside_streaming(make_store, provider):
    """Test that chunks outside streaming are dropped."""
    store = make_store(authenticated=False)
    conversation = await store.create_conversation()
    folder = StreamingResponseFolder(store, conversation.id, provider)

    folder.on_chunk("too early")
    assert folder.accumulated == ""

    final = await folder.run([], "hello")
    assert folder.state is GenerationState.COMPLETED

    folder.on_chunk("too late")
    assert folder.accumulated == "Hello there"
    assert store.get_conversation(conversation.id).messages[-1] == final
