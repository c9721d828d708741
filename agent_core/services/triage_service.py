"""
Intent triage for inbound messages.

classify() never raises: anything other than a well-formed classifier
response degrades to SimpleResponseIntent.
"""

import json
import re
from typing import Any

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.conversation_domain import Project, ThreadMessage, normalize_handle
from agent_core.models.domain.intent_domain import (
    Intent,
    NoReplyIntent,
    OnboardingFlowIntent,
    ProjectAction,
    ProjectFlowIntent,
    SimpleResponseIntent,
)
from agent_core.services.openai_service import OpenAIService, ReasoningServiceError

logger = get_logger(__name__)

ONBOARDING_TRIGGER = "start onboarding"

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_BRACED = re.compile(r"\{[\s\S]*\}")

TRIAGE_PROMPT = """Based on the conversation and the context of the recent messages, analyze the user's intent and respond with a JSON object:
- "responseType": one of ["simpleResponse", "projectFlow", "noReply", "onboardingFlow"]
- Additional fields based on intent.

Rules:
- "projectFlow": Used for ALL project-related actions: creating, updating, completing, or referencing projects.
- "noReply": No response required.
- "onboardingFlow": Related to user onboarding.
- "simpleResponse": Default for other messages that don't fit the above categories.

For "projectFlow" responses, include these additional fields:
- "projectAction": one of ["create", "update", "complete", "reference"]
- "projectName": Name of the project (required for "create", optional for others if context makes it clear)
- "projectDescription": Description of the project (for "create")

Additional context-specific fields:
- For "create": include "attributes" (a JSON object with all project properties beyond name and description)
- For "update": if updating basic info, include "updates" (e.g., {{"description": "new desc"}})
- For updating properties: include "attributeUpdates" (e.g., {{"status": "in progress"}}) and "replaceAttributes" (boolean, default false)

{projects_context}

In the projects table "is_live" is the project status: true means ACTIVE, false means COMPLETED.
When a user says they've completed or finished a project, set projectAction to "complete".

If the mentioned project name is similar to an existing live project, set projectAction to "update" rather than "create", even when the user uses creation language.

Return valid JSON."""


def _projects_context(projects: list[Project]) -> str:
    if not projects:
        return "No existing projects in this chat."
    listing = [
        {"id": p.id, "name": p.name, "description": p.description, "is_live": p.is_live}
        for p in projects
    ]
    return "Existing projects in this chat:\n" + json.dumps(listing, indent=2)


def extract_json_object(raw: str) -> Any:
    """
    Locate and decode the JSON payload in a model response.

    Pure JSON is decoded as is; otherwise a ```json fenced block, then the
    outermost {...} span, is tried. Returns None when nothing decodes.
    """
    text = (raw or "").strip()
    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braced = _BRACED.search(text)
    if braced:
        candidates.append(braced.group(0))

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_intent_response(raw: str) -> Intent:
    """Map a classifier response onto an Intent, degrading to SimpleResponseIntent."""
    parsed = extract_json_object(raw)
    if not isinstance(parsed, dict):
        logger.warning("Triage response was not a JSON object", response_preview=(raw or "")[:100])
        return SimpleResponseIntent()

    response_type = parsed.get("responseType")
    if response_type == "onboardingFlow":
        return OnboardingFlowIntent()
    if response_type == "noReply":
        return NoReplyIntent()
    if response_type == "simpleResponse":
        return SimpleResponseIntent()
    if response_type != "projectFlow":
        logger.warning("Unknown triage response type", response_type=str(response_type))
        return SimpleResponseIntent()

    try:
        action = ProjectAction(str(parsed.get("projectAction") or "create").lower())
    except ValueError:
        logger.warning("Unknown project action", project_action=str(parsed.get("projectAction")))
        return SimpleResponseIntent()

    return ProjectFlowIntent(
        action=action,
        project_name=_as_str(parsed.get("projectName")),
        project_description=_as_str(parsed.get("projectDescription")),
        updates=_as_dict(parsed.get("updates")),
        attributes=_as_dict(parsed.get("attributes")),
        attribute_updates=_as_dict(parsed.get("attributeUpdates")),
        replace_attributes=parsed.get("replaceAttributes") is True,
    )


def is_onboarding_trigger(messages: list[ThreadMessage], agent_handle: str) -> bool:
    if not messages:
        return False
    latest = messages[-1]
    if agent_handle and normalize_handle(latest.sender_number) == agent_handle:
        return False
    return latest.content.strip().lower() == ONBOARDING_TRIGGER


class TriageService:
    def __init__(self, reasoning: OpenAIService, agent_handle: str | None = None):
        self.reasoning = reasoning
        self.agent_handle = normalize_handle(
            agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        )

    async def classify(
        self, recent_messages: list[ThreadMessage], known_projects: list[Project]
    ) -> Intent:
        if is_onboarding_trigger(recent_messages, self.agent_handle):
            logger.info("Onboarding trigger phrase matched")
            return OnboardingFlowIntent()

        conversation = []
        for message in recent_messages:
            role = "assistant" if message.is_from(self.agent_handle) else "user"
            suffix = f" [{message.timestamp}]" if message.timestamp else ""
            conversation.append({"role": role, "content": f"{message.content}{suffix}"})

        system = TRIAGE_PROMPT.format(projects_context=_projects_context(known_projects))
        try:
            raw = await self.reasoning.complete(system, conversation)
        except ReasoningServiceError as e:
            logger.error("Triage reasoning call failed", error=str(e))
            return SimpleResponseIntent()

        intent = parse_intent_response(raw)
        logger.info("Message triaged", intent=intent.kind)
        return intent
