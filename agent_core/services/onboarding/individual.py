"""
Individual onboarding dialog.

State lives in the user's metadata under "onboarding". Each turn re-extracts
every configured field from the whole recent conversation, so answers given
out of order or several at once are picked up. The dialog is complete once
every required field has a value.
"""

from agent_core.config import settings
from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.agent_config_domain import AgenticSettings, OnboardingField
from agent_core.models.domain.conversation_domain import (
    OnboardingState,
    ThreadMessage,
    normalize_handle,
    utc_now,
)
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.agent_config import AgentConfigProvider
from agent_core.services.onboarding.errors import OnboardingServiceError
from agent_core.services.openai_service import (
    OpenAIService,
    ReasoningServiceError,
    format_conversation,
)

logger = get_logger(__name__)

UNPROCESSABLE_MESSAGE = "I'm sorry, I couldn't process your message. Could you please try again?"
ERROR_MESSAGE = (
    "I'm having trouble processing your message. Let's continue with the onboarding. "
    "Could you please tell me your name?"
)
OPENING_FALLBACK = (
    "Hello! I'm your assistant. To help you get set up, could you please tell me your name?"
)


def build_collection_prompt(
    agentic: AgenticSettings, missing_fields: list[OnboardingField]
) -> str:
    """System prompt asking for the fields that are still missing."""
    if not missing_fields:
        return (
            f"{agentic.system_prompt}\n\n"
            f"All required information has been collected. Now, respond with: "
            f"{agentic.final_message}"
        )

    lines = [
        f"- {field.description} ({'required' if field.required else 'optional'}). "
        f"Store as '{field.id}'."
        for field in missing_fields
    ]
    return (
        f"{agentic.system_prompt}\n\n"
        f"Collect the following information:\n" + "\n".join(lines) + "\n\n"
        f"After collecting all required information, respond with: {agentic.final_message}"
    )


def build_extraction_prompt(fields: list[OnboardingField]) -> str:
    listing = "\n".join(f"- {field.id}: {field.description}" for field in fields)
    return (
        "Based on the conversation, extract the following information about the user:\n"
        f"{listing}\n\n"
        "For any fields not mentioned in the conversation, return an empty string. "
        "You MUST respond in valid JSON format with the field ids as keys."
    )


def missing_required(fields: list[OnboardingField], values: dict[str, str]) -> list[OnboardingField]:
    return [field for field in fields if field.required and not values.get(field.id)]


class IndividualOnboarding:
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

    async def needs_onboarding(self, sender_number: str) -> bool:
        """
        True when the sender has not completed onboarding.

        Raises:
            OnboardingServiceError: if the user record cannot be read
        """
        if not self.config.onboarding_flow().enabled or self.store is None:
            return False
        try:
            user = await self.store.get_user_by_phone(sender_number)
        except DatabaseError as e:
            raise OnboardingServiceError(f"Could not read user onboarding state: {e}") from e
        if user is None:
            return True
        return not user.metadata.onboarding_completed()

    async def handle(self, messages: list[ThreadMessage], sender_number: str) -> str:
        """Reply for an onboarding turn: the opening prompt or the next step."""
        if len(messages) <= 1:
            return await self.start(sender_number)
        return await self.continue_dialog(messages, sender_number)

    async def start(self, sender_number: str) -> str:
        """Begin (or restart) onboarding and return the opening prompt."""
        agentic = self.config.onboarding_flow().agentic_settings
        state = OnboardingState.begin(agentic.user_fields)
        await self._save(sender_number, {"onboarding": state.to_json()})

        system = (
            f"{self.config.persona_prompt()}\n\n"
            f"{build_collection_prompt(agentic, agentic.user_fields)}"
        )
        try:
            opening = await self.reasoning.complete(
                system, [{"role": "user", "content": "Hello!"}]
            )
        except ReasoningServiceError as e:
            logger.warning("Opening prompt generation failed", error=str(e))
            return OPENING_FALLBACK

        logger.info("Onboarding started", fields=state.fields_pending)
        return opening or OPENING_FALLBACK

    async def extract_fields(
        self, messages: list[ThreadMessage], fields: list[OnboardingField]
    ) -> dict[str, str]:
        """Values for every field found anywhere in the conversation ("" when absent)."""
        response = await self.reasoning.complete_json(
            build_extraction_prompt(fields),
            format_conversation(messages, self.agent_handle),
            temperature=0.2,
        )
        extracted = {}
        for field in fields:
            value = response.get(field.id)
            extracted[field.id] = value.strip() if isinstance(value, str) else ""
        return extracted

    async def continue_dialog(self, messages: list[ThreadMessage], sender_number: str) -> str:
        agentic = self.config.onboarding_flow().agentic_settings
        state = await self._load_state(sender_number)
        fields = (
            list(state.field_definitions.values())
            if state and state.field_definitions
            else agentic.user_fields
        )

        try:
            extracted = await self.extract_fields(messages, fields)
        except ReasoningServiceError as e:
            logger.error("Onboarding extraction failed", error=str(e))
            return ERROR_MESSAGE

        missing = missing_required(fields, extracted)
        collected = {key: value for key, value in extracted.items() if value}

        state = state or OnboardingState.begin(fields)
        state.fields_collected = collected
        state.fields_pending = [field.id for field in fields if not extracted.get(field.id)]
        state.completed = not missing
        state.in_progress = bool(missing)
        if state.completed:
            state.completion_time = utc_now()
        await self._save(sender_number, {**collected, "onboarding": state.to_json()})

        if state.completed:
            logger.info("Onboarding completed", fields=list(collected))
            return agentic.final_message

        still_missing = [field for field in fields if not extracted.get(field.id)]
        system = (
            f"{self.config.persona_prompt()}\n\n{build_collection_prompt(agentic, still_missing)}"
        )
        try:
            reply = await self.reasoning.complete(
                system, format_conversation(messages, self.agent_handle)
            )
        except ReasoningServiceError as e:
            logger.warning("Onboarding question generation failed", error=str(e))
            return UNPROCESSABLE_MESSAGE

        logger.info(
            "Onboarding continued",
            missing_required=[field.id for field in missing],
            collected=list(collected),
        )
        return reply or UNPROCESSABLE_MESSAGE

    async def _load_state(self, sender_number: str) -> OnboardingState | None:
        if self.store is None:
            return None
        try:
            user = await self.store.get_user_by_phone(sender_number)
        except DatabaseError as e:
            logger.warning("Reading onboarding state failed", error=str(e))
            return None
        return user.metadata.onboarding if user else None

    async def _save(self, sender_number: str, patch: dict) -> None:
        if self.store is None:
            return
        try:
            await self.store.merge_user_metadata(sender_number, patch)
        except DatabaseError as e:
            logger.error("Saving onboarding progress failed", error=str(e))
