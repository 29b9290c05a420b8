"""Tests for ConversationStore — libsql CRUD."""

import pytest

from memoria.conversations.store import ConversationStore
from memoria.errors import NotFoundError

OWNER = "user_1"


async def test_create_with_messages(conversation_store: ConversationStore) -> None:
    conversation = await conversation_store.create_conversation(OWNER, ["p1", "r1"])

    assert conversation.owner_id == OWNER
    assert conversation.summary == ""
    assert conversation.message_ids == ["p1", "r1"]
    assert conversation.embedded_at is None


async def test_append_keeps_order_and_skips_duplicates(
    conversation_store: ConversationStore,
) -> None:
    conversation = await conversation_store.create_conversation(OWNER, ["p1", "r1"])
    updated = await conversation_store.append_messages(conversation.id, OWNER, ["r1", "p2", "r2"])
    assert updated.message_ids == ["p1", "r1", "p2", "r2"]


async def test_append_to_other_owner_raises(conversation_store: ConversationStore) -> None:
    conversation = await conversation_store.create_conversation(OWNER, ["p1"])
    with pytest.raises(NotFoundError):
        await conversation_store.append_messages(conversation.id, "user_2", ["p2"])


async def test_update_summary_clears_embedding(conversation_store: ConversationStore) -> None:
    conversation = await conversation_store.create_conversation(OWNER, ["p1"])
    await conversation_store.mark_embedded(conversation.id)
    assert (await conversation_store.get_conversation(conversation.id, OWNER)).embedded_at

    updated = await conversation_store.update_summary(conversation.id, OWNER, "Talked about X.")
    assert updated.summary == "Talked about X."
    assert updated.embedded_at is None


async def test_update_summary_missing_raises(conversation_store: ConversationStore) -> None:
    with pytest.raises(NotFoundError):
        await conversation_store.update_summary("nope", OWNER, "x")


async def test_get_other_owner_raises(conversation_store: ConversationStore) -> None:
    conversation = await conversation_store.create_conversation(OWNER, [])
    with pytest.raises(NotFoundError):
        await conversation_store.get_conversation(conversation.id, "user_2")


async def test_unlink_note(conversation_store: ConversationStore) -> None:
    first = await conversation_store.create_conversation(OWNER, ["p1", "shared"])
    second = await conversation_store.create_conversation(OWNER, ["shared", "p2"])

    removed = await conversation_store.unlink_note("shared")
    assert removed == 2
    assert (await conversation_store.get_conversation(first.id, OWNER)).message_ids == ["p1"]
    assert (await conversation_store.get_conversation(second.id, OWNER)).message_ids == ["p2"]


async def test_get_conversations_by_ids(conversation_store: ConversationStore) -> None:
    a = await conversation_store.create_conversation(OWNER, [])
    b = await conversation_store.create_conversation(OWNER, [])
    theirs = await conversation_store.create_conversation("user_2", [])

    found = await conversation_store.get_conversations_by_ids([b.id, theirs.id, a.id], OWNER)
    assert [c.id for c in found] == [b.id, a.id]


async def test_list_unembedded_needs_summary(conversation_store: ConversationStore) -> None:
    blank = await conversation_store.create_conversation(OWNER, [])
    summarized = await conversation_store.create_conversation(OWNER, [])
    await conversation_store.update_summary(summarized.id, OWNER, "notes")

    pending = await conversation_store.list_unembedded(OWNER)
    assert [c.id for c in pending] == [summarized.id]
    assert blank.id not in [c.id for c in pending]

    await conversation_store.mark_embedded(summarized.id)
    assert await conversation_store.list_unembedded(OWNER) == []
