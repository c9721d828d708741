"""
Tests for the per-message orchestration flow.
"""

from unittest.mock import AsyncMock

import pytest

from agent_core.models.api.webhook_request import WebhookPayload
from agent_core.models.domain.agent_config_domain import (
    DEFAULT_FINAL_MESSAGE,
    GroupAgenticSettings,
    GroupOnboardingFlow,
    MemorySettings,
    OnboardingField,
    SafetySettings,
    default_group_onboarding_flow,
    default_onboarding_flow,
)
from agent_core.models.domain.conversation_domain import Participant
from agent_core.services.agent_runtime import AgentRuntime
from agent_core.services.orchestrator import TRIAGE_FAILURE_MESSAGE, UNEXPECTED_ERROR_MESSAGE
from agent_core.services.reply_service import REPLY_FALLBACK
from tests.conftest import AGENT_NUMBER

USER = "+15551234567"


class TestConfig:
    __test__ = False

    def __init__(self, onboarding_enabled: bool = False, group_flow=None):
        self.flow = default_onboarding_flow()
        self.flow.enabled = onboarding_enabled
        self.group_flow = group_flow or default_group_onboarding_flow()

    def onboarding_flow(self):
        return self.flow

    def group_onboarding_flow(self):
        return self.group_flow

    def memory_settings(self):
        return MemorySettings()

    def persona_prompt(self):
        return "You are helpful."

    def safety_settings(self):
        return SafetySettings(guidelines=["Never share secrets."])


@pytest.fixture
def runtime_factory(monkeypatch, fake_store, fake_reasoning, fake_gateway):
    monkeypatch.setattr("agent_core.config.settings.AGENT_NUMBER", AGENT_NUMBER)
    monkeypatch.setattr("agent_core.config.settings.CHUNK_DELAY_SECONDS", 0)
    monkeypatch.setattr("agent_core.config.settings.GROUP_PROMPT_DELAY_SECONDS", 0)
    monkeypatch.setattr("agent_core.config.settings.REMINDER_DELAY_SECONDS", 0)

    def _build(store=fake_store, onboarding_enabled=False, group_flow=None):
        return AgentRuntime(
            store=store,
            reasoning=fake_reasoning,
            gateway=fake_gateway,
            config=TestConfig(onboarding_enabled, group_flow),
        )

    return _build


def _payload(text: str, **overrides) -> WebhookPayload:
    data = {
        "thread_id": "thread-1",
        "message_id": "m1",
        "message_content": {"text": text},
        "sender_number": USER,
        "sender_name": "Ana",
        "thread_type": "individual",
        "service": "whatsapp",
    }
    data.update(overrides)
    return WebhookPayload(**data)


@pytest.mark.asyncio
async def test_simple_reply_is_delivered(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_reasoning.queue('{"responseType": "simpleResponse"}', "Hi Ana!")
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(_payload("hello"))
    await runtime.tasks.drain()

    assert result.action == "reply"
    assert result.intent == "simple_response"
    assert fake_gateway.sent == [("individual", "Hi Ana!", USER)]
    assert fake_store.agent_messages == [("thread-1", "Hi Ana!")]
    assert "<CONVERSATION_CONTEXT>" in fake_reasoning.calls[1]["system"]
    assert "1) Never share secrets." in fake_reasoning.calls[1]["system"]
    assert runtime.tasks.stats()["started"] == 1


@pytest.mark.asyncio
async def test_agent_messages_are_stored_without_reply(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(_payload("sent by me", sender_number=AGENT_NUMBER))

    assert result.action == "agent_message"
    assert fake_store.messages["thread-1"][0].content == "sent by me"
    assert fake_gateway.sent == []
    assert fake_reasoning.calls == []


@pytest.mark.asyncio
async def test_group_plus_sender_is_treated_as_agent(runtime_factory, fake_gateway):
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(
        _payload("echo", thread_type="group", sender_number="+")
    )

    assert result.action == "agent_message"
    assert fake_gateway.sent == []


@pytest.mark.asyncio
async def test_no_reply_intent_sends_nothing(runtime_factory, fake_reasoning, fake_gateway):
    fake_reasoning.queue('{"responseType": "noReply"}')
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(_payload("ok thanks"))

    assert result.action == "no_reply"
    assert result.replied is False
    assert fake_gateway.sent == []


@pytest.mark.asyncio
async def test_project_flow_adds_context_to_reply(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_reasoning.queue(
        '{"responseType": "projectFlow", "projectAction": "create", '
        '"projectName": "Garden", "projectDescription": "Veg patch"}',
        "Garden project is set up!",
    )
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(_payload("let's plan a garden"))

    assert result.action == "project_flow"
    assert [p.name for p in fake_store.projects] == ["Garden"]
    reply_messages = fake_reasoning.calls[1]["messages"]
    assert reply_messages[-1] == {
        "role": "system",
        "content": 'Project "Garden" was just created. Created new project: Garden',
    }
    assert fake_gateway.sent[-1][1] == "Garden project is set up!"


@pytest.mark.asyncio
async def test_new_user_gets_onboarding_opening(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_reasoning.queue("Hello! What's your name?")
    runtime = runtime_factory(onboarding_enabled=True)

    result = await runtime.orchestrator.handle_incoming(_payload("hi"))

    assert result.action == "onboarding"
    assert fake_gateway.sent == [("individual", "Hello! What's your name?", USER)]
    assert fake_store.users["15551234567"].metadata.onboarding.in_progress is True


@pytest.mark.asyncio
async def test_store_outage_still_replies(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_store.fail = True
    fake_reasoning.queue('{"responseType": "simpleResponse"}', "Still here!")
    runtime = runtime_factory()

    result = await runtime.orchestrator.handle_incoming(_payload("hello"))

    assert result.chat_id is None
    assert fake_gateway.sent == [("individual", "Still here!", USER)]
    assert [m.content for m in runtime.cache.get("thread-1")] == ["hello"]


@pytest.mark.asyncio
async def test_reply_failure_uses_fallback_text(runtime_factory, fake_reasoning, fake_gateway):
    fake_reasoning.queue('{"responseType": "simpleResponse"}')
    runtime = runtime_factory()

    await runtime.orchestrator.handle_incoming(_payload("hello"))

    assert fake_gateway.sent == [("individual", REPLY_FALLBACK, USER)]


@pytest.mark.asyncio
async def test_triage_crash_sends_apology(runtime_factory, fake_gateway):
    runtime = runtime_factory()
    runtime.orchestrator.triage.classify = AsyncMock(side_effect=RuntimeError("boom"))

    result = await runtime.orchestrator.handle_incoming(_payload("hello"))

    assert result.action == "triage_failed"
    assert fake_gateway.sent == [("individual", TRIAGE_FAILURE_MESSAGE, USER)]


@pytest.mark.asyncio
async def test_unexpected_error_sends_apology_and_raises(runtime_factory, fake_reasoning, fake_gateway):
    fake_reasoning.queue('{"responseType": "simpleResponse"}')
    runtime = runtime_factory()
    runtime.orchestrator.replies.generate_reply = AsyncMock(side_effect=RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        await runtime.orchestrator.handle_incoming(_payload("hello"))

    assert fake_gateway.sent == [("individual", UNEXPECTED_ERROR_MESSAGE, USER)]


GROUP = "group-1"


def _group_flow() -> GroupOnboardingFlow:
    return GroupOnboardingFlow(
        enabled=True,
        agentic_settings=GroupAgenticSettings(
            system_prompt="Onboard the group.",
            user_fields=[
                OnboardingField(id="group_purpose", description="What the group is for"),
                OnboardingField(id="group_goals", description="What the group wants to achieve"),
            ],
            final_message="Thanks, all set!",
            initial_group_message="Hi everyone!",
        ),
    )


def _group_payload(text: str, message_id: str, sender: str = "+15557654321") -> WebhookPayload:
    return _payload(
        text, thread_id=GROUP, message_id=message_id, thread_type="group", sender_number=sender
    )


@pytest.mark.asyncio
async def test_group_onboarding_runs_through_orchestrator(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_reasoning.queue("What is this group for?", "What do you want to achieve?")
    runtime = runtime_factory(group_flow=_group_flow())

    started = await runtime.orchestrator.handle_incoming(_group_payload("hey bot", "g1"))

    assert started.action == "group_onboarding"
    assert fake_gateway.sent == [
        ("group", "Hi everyone!", GROUP),
        ("group", "What is this group for?", GROUP),
    ]

    answered = await runtime.orchestrator.handle_incoming(_group_payload("Book club", "g2"))

    assert answered.action == "group_onboarding"
    assert answered.intent is None
    assert fake_gateway.sent[-1] == ("group", "What do you want to achieve?", GROUP)

    finished = await runtime.orchestrator.handle_incoming(
        _group_payload("Read one book a month", "g3", sender="+15559990000")
    )

    assert finished.action == "group_onboarding"
    assert fake_gateway.sent[-1] == ("group", "Thanks, all set!", GROUP)
    chat = fake_store.chats[GROUP]
    assert chat.metadata.onboarding.completed is True
    assert chat.metadata.group_info["group_purpose"] == "Book club"
    assert chat.metadata.group_info["group_goals"] == "Read one book a month"
    assert "onboarding_completed_at" in chat.metadata.group_info
    # only the two generated questions, no triage or reply calls
    assert len(fake_reasoning.calls) == 2


@pytest.mark.asyncio
async def test_group_messages_after_onboarding_go_to_triage(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_store.add_chat(GROUP, "group", {"onboarding": {"in_progress": False, "completed": True}})
    fake_reasoning.queue('{"responseType": "simpleResponse"}', "Hello book club!")
    runtime = runtime_factory(group_flow=_group_flow())

    result = await runtime.orchestrator.handle_incoming(_group_payload("hi all", "g4"))

    assert result.action == "reply"
    assert fake_gateway.sent == [("group", "Hello book club!", GROUP)]


@pytest.mark.asyncio
async def test_individual_onboarding_resumes_after_restart(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    fake_reasoning.queue("Hello! What's your name and email?")
    first = runtime_factory(onboarding_enabled=True)
    await first.orchestrator.handle_incoming(_payload("hi", message_id="m1"))

    fake_reasoning.queue({"name": "Ana Silva", "email": "ana@example.com"})
    restarted = runtime_factory(onboarding_enabled=True)
    result = await restarted.orchestrator.handle_incoming(
        _payload("I'm Ana Silva, ana@example.com", message_id="m2")
    )

    assert result.action == "onboarding"
    assert fake_gateway.sent[-1] == ("individual", DEFAULT_FINAL_MESSAGE, USER)
    metadata = fake_store.users["15551234567"].metadata
    assert metadata.onboarding_completed()
    assert metadata.onboarding.fields_collected == {"name": "Ana Silva", "email": "ana@example.com"}

    fake_reasoning.queue('{"responseType": "simpleResponse"}', "Welcome back, Ana!")
    after = await restarted.orchestrator.handle_incoming(_payload("what's next?", message_id="m3"))

    assert after.action == "reply"
    assert fake_gateway.sent[-1] == ("individual", "Welcome back, Ana!", USER)


@pytest.mark.asyncio
async def test_project_reminders_reach_chats_with_live_projects(runtime_factory, fake_reasoning, fake_gateway, fake_store):
    individual = fake_store.add_chat("thread-1")
    user = fake_store.add_user(USER, "Ana")
    fake_store.participants[individual.id] = [
        Participant(user_id=user.id, name="Ana", phone_number=user.phone_number, metadata={})
    ]
    group = fake_store.add_chat(GROUP, "group")
    fake_store.add_chat("quiet-thread")
    await fake_store.create_project(individual.id, "Garden", "Veg patch")
    await fake_store.create_project(group.id, "Reading list", None)
    done = await fake_store.create_project(group.id, "Old plan", None)
    await fake_store.update_project(done, {"is_live": False})
    fake_reasoning.queue("How is the garden going?", "Any progress on the reading list?")
    runtime = runtime_factory()

    stats = await runtime.reminders.send_reminders()

    assert (stats.total_chats, stats.chats_with_active_projects, stats.reminders_sent) == (3, 2, 2)
    assert fake_gateway.sent == [
        ("individual", "How is the garden going?", "15551234567"),
        ("group", "Any progress on the reading list?", GROUP),
    ]
    group_instruction = fake_reasoning.calls[1]["messages"][-1]["content"]
    assert '"Reading list"' in group_instruction
    assert "Old plan" not in group_instruction
