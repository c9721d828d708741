"""
Tests for intent triage parsing and classification.
"""

import pytest

from agent_core.models.domain.conversation_domain import Project
from agent_core.models.domain.intent_domain import (
    NoReplyIntent,
    OnboardingFlowIntent,
    ProjectAction,
    ProjectFlowIntent,
    SimpleResponseIntent,
)
from agent_core.services.openai_service import ReasoningServiceError
from agent_core.services.triage_service import (
    TriageService,
    extract_json_object,
    is_onboarding_trigger,
    parse_intent_response,
)
from tests.conftest import AGENT_NUMBER, make_message


@pytest.mark.parametrize("raw", ["", "not json at all", "{broken", "[1, 2, 3]", "null"])
def test_non_json_degrades_to_simple_response(raw):
    assert isinstance(parse_intent_response(raw), SimpleResponseIntent)


def test_unknown_response_type_degrades():
    assert isinstance(parse_intent_response('{"responseType": "dance"}'), SimpleResponseIntent)


def test_unknown_project_action_degrades():
    raw = '{"responseType": "projectFlow", "projectAction": "archive"}'

    assert isinstance(parse_intent_response(raw), SimpleResponseIntent)


def test_fenced_json_is_extracted():
    raw = 'Sure!\n```json\n{"responseType": "noReply"}\n```'

    assert isinstance(parse_intent_response(raw), NoReplyIntent)


def test_braced_json_inside_prose_is_extracted():
    assert extract_json_object('Answer: {"responseType": "onboardingFlow"} thanks') == {
        "responseType": "onboardingFlow"
    }


def test_project_flow_fields_are_mapped():
    raw = """{
        "responseType": "projectFlow",
        "projectAction": "Update",
        "projectName": " Garden ",
        "attributeUpdates": {"status": "in progress"},
        "replaceAttributes": true,
        "updates": "not a dict"
    }"""

    intent = parse_intent_response(raw)

    assert isinstance(intent, ProjectFlowIntent)
    assert intent.action is ProjectAction.UPDATE
    assert intent.project_name == "Garden"
    assert intent.attribute_updates == {"status": "in progress"}
    assert intent.replace_attributes is True
    assert intent.updates == {}


def test_trigger_phrase_only_counts_for_latest_user_message():
    agent_message = make_message("start onboarding", sender=AGENT_NUMBER, name="Agent", idx=2)
    user_message = make_message("  Start Onboarding ", idx=1)

    assert is_onboarding_trigger([user_message], "15550000000") is True
    assert is_onboarding_trigger([user_message, agent_message], "15550000000") is False
    assert is_onboarding_trigger([], "15550000000") is False


@pytest.mark.asyncio
async def test_classify_short_circuits_on_trigger(fake_reasoning):
    triage = TriageService(fake_reasoning, agent_handle=AGENT_NUMBER)

    intent = await triage.classify([make_message("start onboarding")], [])

    assert isinstance(intent, OnboardingFlowIntent)
    assert fake_reasoning.calls == []


@pytest.mark.asyncio
async def test_classify_includes_known_projects(fake_reasoning):
    fake_reasoning.queue('{"responseType": "simpleResponse"}')
    triage = TriageService(fake_reasoning, agent_handle=AGENT_NUMBER)
    projects = [Project(id="p1", chat_id="c1", name="Garden")]

    intent = await triage.classify([make_message("hi")], projects)

    assert isinstance(intent, SimpleResponseIntent)
    assert '"name": "Garden"' in fake_reasoning.calls[0]["system"]


@pytest.mark.asyncio
async def test_classify_degrades_when_reasoning_fails(fake_reasoning):
    fake_reasoning.queue(ReasoningServiceError("timed out"))
    triage = TriageService(fake_reasoning, agent_handle=AGENT_NUMBER)

    intent = await triage.classify([make_message("hi")], [])

    assert isinstance(intent, SimpleResponseIntent)
