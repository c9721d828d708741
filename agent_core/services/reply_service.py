"""
Reply generation.

The system prompt is assembled from the persona, a description of the
conversation (type, participants, projects), onboarding data, project
details and the configured safety guidelines. Context that fails to load
is left out rather than failing the reply.
"""

import json

from agent_core.config import settings
from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.conversation_domain import (
    Participant,
    Project,
    ThreadMessage,
    normalize_handle,
)
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.agent_config import AgentConfigProvider
from agent_core.services.openai_service import (
    OpenAIService,
    ReasoningServiceError,
    format_conversation,
)

logger = get_logger(__name__)

REPLY_FALLBACK = "I'm sorry, but I encountered an error while processing your message."


def mask_phone(phone_number: str) -> str:
    digits = normalize_handle(phone_number)
    if len(digits) <= 4:
        return digits
    return f"***{digits[-4:]}"


def build_conversation_context(
    thread_type: str,
    message_count: int,
    participants: list[Participant],
    projects: list[Project],
) -> str:
    lines = [
        "<CONVERSATION_CONTEXT>",
        f"Chat Type: {thread_type}",
        f"Message History: {message_count} messages",
    ]

    if participants:
        lines.append("Participants:")
        for participant in participants:
            details = {k: v for k, v in participant.metadata.items() if not k.startswith("_")}
            entry = f"- {participant.name or 'Unknown'} ({mask_phone(participant.phone_number)})"
            if details:
                entry += f" {json.dumps(details, default=str)}"
            lines.append(entry)

    if projects:
        lines.append("Projects:")
        for project in projects:
            status = "active" if project.is_live else "completed"
            lines.append(f"- {project.name} [{status}]: {project.description or ''}".rstrip())

    lines.append("</CONVERSATION_CONTEXT>")
    return "\n".join(lines)


def build_projects_context(projects: list[Project]) -> str:
    def describe(project: Project) -> str:
        text = f"- {project.name}: {project.description or 'No description'}"
        if project.attributes:
            text += f"\n  Attributes: {json.dumps(project.attributes, default=str)}"
        return text

    active = [describe(p) for p in projects if p.is_live]
    completed = [describe(p) for p in projects if not p.is_live]
    sections = ["--- Projects Context ---"]
    sections.append("Active Projects:\n" + ("\n".join(active) if active else "None"))
    sections.append("Completed Projects:\n" + ("\n".join(completed) if completed else "None"))
    return "\n".join(sections)


class ReplyService:
    def __init__(
        self,
        store: ConversationRepository | None,
        reasoning: OpenAIService,
        config: AgentConfigProvider,
        agent_handle: str | None = None,
    ):
        self.store = store
        self.reasoning = reasoning
        self.config = config
        self.agent_handle = normalize_handle(
            agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        )

    async def _onboarding_data(self, thread_id: str, thread_type: str, sender_number: str) -> dict:
        if thread_type == "group":
            chat = await self.store.get_chat(thread_id)
            return dict(chat.metadata.group_info) if chat else {}
        user = await self.store.get_user_by_phone(sender_number)
        if user is None or user.metadata.onboarding is None:
            return {}
        return dict(user.metadata.onboarding.fields_collected)

    async def build_system_prompt(
        self,
        messages: list[ThreadMessage],
        *,
        thread_id: str,
        thread_type: str,
        chat_id: str | None,
        sender_number: str,
    ) -> str:
        participants: list[Participant] = []
        projects: list[Project] = []
        onboarding: dict = {}

        if self.store is not None:
            try:
                if chat_id:
                    participants = await self.store.list_participants(chat_id)
                    projects = await self.store.get_projects_by_chat(chat_id)
                onboarding = await self._onboarding_data(thread_id, thread_type, sender_number)
            except DatabaseError as e:
                logger.warning("Loading reply context failed", thread_id=thread_id, error=str(e))

        parts = [
            self.config.persona_prompt(),
            build_conversation_context(thread_type, len(messages), participants, projects),
        ]
        if onboarding:
            parts.append(
                "--- Onboarding Data Context ---\n" + json.dumps(onboarding, indent=2, default=str)
            )
        if projects:
            parts.append(build_projects_context(projects))
        safety = self.config.safety_settings().to_prompt()
        if safety:
            parts.append(safety)
        return "\n\n".join(parts)

    async def generate_reply(
        self,
        messages: list[ThreadMessage],
        *,
        thread_id: str,
        thread_type: str,
        chat_id: str | None,
        sender_number: str,
        project_context: str | None = None,
        fallback: str | None = REPLY_FALLBACK,
    ) -> str | None:
        """Generate the agent's reply; returns `fallback` when generation fails."""
        system = await self.build_system_prompt(
            messages,
            thread_id=thread_id,
            thread_type=thread_type,
            chat_id=chat_id,
            sender_number=sender_number,
        )
        conversation = format_conversation(messages, self.agent_handle, thread_type)
        if project_context:
            conversation.append({"role": "system", "content": project_context})

        try:
            reply = await self.reasoning.complete(system, conversation)
        except ReasoningServiceError as e:
            logger.error("Reply generation failed", thread_id=thread_id, error=str(e))
            return fallback

        return reply or fallback
