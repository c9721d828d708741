"""
Tests for the memory merge engine.
"""

import asyncio
from datetime import UTC, datetime

import pytest

from agent_core.models.domain.agent_config_domain import MemoryField, MemorySettings, MergePolicy
from agent_core.models.domain.conversation_domain import MemoryEntry
from agent_core.repositories.conversation_repository import MemoryScope
from agent_core.services.infrastructure.chat_locks import ChatLockRegistry
from agent_core.services.memory_service import (
    MemoryService,
    merge_memory_value,
    merge_suggestions,
    parse_memory_suggestions,
    resolve_merge_policy,
)
from agent_core.services.openai_service import ReasoningServiceError

STAMP = datetime(2024, 1, 1, tzinfo=UTC)


def _entry(value: str) -> MemoryEntry:
    return MemoryEntry(value=value, updated_at=STAMP)


def test_identical_value_is_noop():
    existing = {"likes": _entry("pizza")}

    applied = merge_suggestions(existing, {"likes": "pizza"})

    assert applied == {}
    assert existing["likes"].value == "pizza"
    assert existing["likes"].updated_at == STAMP


def test_repeated_suggestion_does_not_duplicate():
    existing = {"preferences_1": _entry("Likes pizza")}

    first = merge_suggestions(existing, {"preferences_1": "enjoys pasta"})
    existing.update(first)
    second = merge_suggestions(existing, {"preferences_1": "enjoys pasta"})

    assert existing["preferences_1"].value == "Likes pizza. enjoys pasta"
    assert second == {}


def test_accumulating_field_appends():
    applied = merge_suggestions({"preferences_1": _entry("Likes pizza")}, {"preferences_1": "enjoys pasta"})

    entry = applied["preferences_1"]
    assert entry.value == "Likes pizza. enjoys pasta"
    assert entry.previous_value == "Likes pizza"


def test_accumulating_field_skips_contained_value():
    applied = merge_suggestions({"likes": _entry("Pizza and pasta")}, {"likes": "pasta"})

    assert applied == {}


def test_single_valued_field_is_replaced():
    applied = merge_suggestions({"role": _entry("Engineer")}, {"role": "Manager"})

    entry = applied["role"]
    assert entry.value == "Manager"
    assert entry.previous_value == "Engineer"


def test_new_field_has_no_previous_value():
    entry = merge_memory_value(None, "Ana", MergePolicy.REPLACE)

    assert entry.value == "Ana"
    assert entry.previous_value is None


def test_declared_policy_overrides_heuristic():
    fields = [MemoryField(id="topics", merge_policy="replace")]

    applied = merge_suggestions({"topics": _entry("golf")}, {"topics": "tennis"}, fields)

    assert applied["topics"].value == "tennis"
    assert applied["topics"].previous_value == "golf"


@pytest.mark.parametrize(
    ("field_id", "expected"),
    [
        ("preferences", MergePolicy.ACCUMULATE),
        ("food_likes", MergePolicy.ACCUMULATE),
        ("dislikes", MergePolicy.ACCUMULATE),
        ("topics", MergePolicy.ACCUMULATE),
        ("goal2", MergePolicy.ACCUMULATE),
        ("role", MergePolicy.REPLACE),
        ("email", MergePolicy.REPLACE),
    ],
)
def test_merge_policy_heuristic(field_id, expected):
    assert resolve_merge_policy(field_id) is expected


def test_parse_suggestions_drops_unknown_and_non_string_values():
    allowed = [MemoryField(id="role"), MemoryField(id="likes")]
    raw = [
        {"id": "role", "newValue": "Manager"},
        {"id": "likes", "newValue": 42},
        {"id": "unknown", "newValue": "x"},
        "not a dict",
    ]

    assert parse_memory_suggestions(raw, allowed) == {"role": "Manager"}
    assert parse_memory_suggestions(None, allowed) == {}


def _memory_settings() -> MemorySettings:
    return MemorySettings(
        user_memory_enabled=True,
        user_memory_fields=[MemoryField(id="role", title="Role", description="Job title")],
        chat_memory_enabled=True,
        chat_memory_fields=[MemoryField(id="topics", title="Topics", description="Topics")],
    )


@pytest.mark.asyncio
async def test_memory_service_applies_suggestions(fake_store, fake_reasoning):
    user = fake_store.add_user("+15551234567")
    user.memory["role"] = _entry("Engineer")
    fake_store.add_chat("thread-1")
    fake_reasoning.queue(
        {
            "userMemoryUpdates": [{"id": "role", "newValue": "Manager"}],
            "chatMemoryUpdates": [{"id": "topics", "newValue": "hiring"}],
        }
    )
    service = MemoryService(fake_store, fake_reasoning, ChatLockRegistry())

    applied = await service.process_message_for_memory_updates(
        content="I just got promoted to manager, we're talking hiring",
        sender_number="+15551234567",
        thread_id="thread-1",
        settings=_memory_settings(),
    )

    assert [u.field_id for u in applied["user"]] == ["role"]
    assert [u.field_id for u in applied["chat"]] == ["topics"]
    stored = await fake_store.get_all_memory(MemoryScope.USER, "15551234567")
    assert stored["role"].value == "Manager"
    assert stored["role"].previous_value == "Engineer"
    assert "current_value: Engineer" in fake_reasoning.calls[0]["system"]


@pytest.mark.asyncio
async def test_memory_service_survives_reasoning_failure(fake_store, fake_reasoning):
    fake_store.add_user("+15551234567")
    fake_store.add_chat("thread-1")
    fake_reasoning.queue(ReasoningServiceError("timeout"))
    service = MemoryService(fake_store, fake_reasoning, ChatLockRegistry())

    applied = await service.process_message_for_memory_updates(
        content="hello",
        sender_number="+15551234567",
        thread_id="thread-1",
        settings=_memory_settings(),
    )

    assert applied == {"user": [], "chat": []}


@pytest.mark.asyncio
async def test_memory_service_skips_when_disabled(fake_store, fake_reasoning):
    service = MemoryService(fake_store, fake_reasoning, ChatLockRegistry())

    applied = await service.process_message_for_memory_updates(
        content="hello",
        sender_number="+15551234567",
        thread_id="thread-1",
        settings=MemorySettings(),
    )

    assert applied == {"user": [], "chat": []}
    assert fake_reasoning.calls == []


@pytest.mark.asyncio
async def test_memory_model_call_runs_outside_chat_lock(fake_store, fake_reasoning):
    fake_store.add_user("+15551234567")
    fake_store.add_chat("thread-1")
    locks = ChatLockRegistry()
    lock_state = []

    async def complete_json(system, messages, **kwargs):
        lock_state.append(locks.is_locked("thread-1"))
        return {"chatMemoryUpdates": [{"id": "topics", "newValue": "hiring"}]}

    fake_reasoning.complete_json = complete_json
    service = MemoryService(fake_store, fake_reasoning, locks)

    async with locks.hold("thread-1"):
        task = asyncio.create_task(
            service.process_message_for_memory_updates(
                content="we're talking hiring",
                sender_number="+15551234567",
                thread_id="thread-1",
                settings=_memory_settings(),
            )
        )
        await asyncio.sleep(0.01)
        # model call finished while the turn still holds the lock, write is pending
        assert lock_state == [True]
        assert "topics" not in fake_store.chats["thread-1"].memory

    applied = await task

    assert [u.field_id for u in applied["chat"]] == ["topics"]
    assert fake_store.chats["thread-1"].memory["topics"].value == "hiring"
