"""
Group onboarding dialog.

State lives in the chat's metadata under "onboarding". The dialog asks one
field at a time and takes the next inbound message's raw text as the answer
to the field at the head of fields_pending. Nothing is kept in process
memory, so a restart resumes on the next message.
"""

import asyncio

from agent_core.config import settings
from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.agent_config_domain import OnboardingField
from agent_core.models.domain.conversation_domain import (
    Chat,
    OnboardingState,
    ThreadMessage,
    utc_now,
)
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.agent_config import AgentConfigProvider
from agent_core.services.delivery_service import DeliveryContext, DeliveryService
from agent_core.services.onboarding.errors import OnboardingServiceError
from agent_core.services.openai_service import (
    OpenAIService,
    ReasoningServiceError,
    format_conversation,
)

logger = get_logger(__name__)

QUESTION_HISTORY_LIMIT = 10


class GroupOnboarding:
    def __init__(
        self,
        store: ConversationRepository | None,
        reasoning: OpenAIService,
        config: AgentConfigProvider,
        delivery: DeliveryService,
        agent_handle: str | None = None,
        prompt_delay: float | None = None,
    ):
        self.store = store
        self.reasoning = reasoning
        self.config = config
        self.delivery = delivery
        self.agent_handle = agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        self.prompt_delay = (
            settings.GROUP_PROMPT_DELAY_SECONDS if prompt_delay is None else prompt_delay
        )

    async def _get_chat(self, thread_id: str) -> Chat | None:
        if self.store is None:
            return None
        try:
            return await self.store.get_chat(thread_id)
        except DatabaseError as e:
            raise OnboardingServiceError(
                f"Could not read group onboarding state: {e}", thread_id=thread_id
            ) from e

    async def _save_state(self, chat: Chat, patch: dict) -> None:
        try:
            await self.store.merge_chat_metadata(chat.id, patch)
        except DatabaseError as e:
            raise OnboardingServiceError(
                f"Could not save group onboarding state: {e}", thread_id=chat.external_id
            ) from e

    async def is_in_progress(self, thread_id: str) -> bool:
        chat = await self._get_chat(thread_id)
        state = chat.metadata.onboarding if chat else None
        return state is not None and state.active

    async def start_if_new(
        self, thread_id: str, is_new_chat: bool, context: DeliveryContext
    ) -> bool:
        """Start the dialog on a newly observed group chat. True when started."""
        flow = self.config.group_onboarding_flow()
        if not is_new_chat or not flow.enabled:
            return False

        chat = await self._get_chat(thread_id)
        if chat is None or chat.metadata.onboarding is not None:
            return False

        fields = flow.agentic_settings.user_fields
        if not fields:
            logger.warning("Group onboarding enabled without fields", thread_id=thread_id)
            return False

        if flow.agentic_settings.initial_group_message:
            await self.delivery.deliver(flow.agentic_settings.initial_group_message, context)

        state = OnboardingState.begin(fields)
        await self._save_state(chat, {"onboarding": state.to_json()})
        logger.info("Group onboarding started", thread_id=thread_id, fields=state.fields_pending)

        await asyncio.sleep(self.prompt_delay)
        await self._ask(fields[0], [], context)
        return True

    async def process_answer(
        self,
        thread_id: str,
        answer: str,
        history: list[ThreadMessage],
        context: DeliveryContext,
    ) -> bool:
        """
        Take `answer` verbatim for the pending field and advance the dialog.

        Returns True when the message was consumed by onboarding.
        """
        chat = await self._get_chat(thread_id)
        state = chat.metadata.onboarding if chat else None
        if state is None or not state.active:
            return False

        if not state.fields_pending:
            if state.fields_collected:
                await self.complete(chat, state, context)
                return True
            return False

        field_id = state.fields_pending.pop(0)
        state.fields_collected[field_id] = answer
        logger.info(
            "Group onboarding answer recorded",
            thread_id=thread_id,
            field_id=field_id,
            remaining=len(state.fields_pending),
        )

        if not state.fields_pending:
            await self.complete(chat, state, context)
            return True

        await self._save_state(chat, {"onboarding": state.to_json()})
        await asyncio.sleep(self.prompt_delay)
        await self._ask(self._field(state, state.fields_pending[0]), history, context)
        return True

    async def complete(self, chat: Chat, state: OnboardingState, context: DeliveryContext) -> None:
        now = utc_now()
        group_info = {
            **chat.metadata.group_info,
            **state.fields_collected,
            "onboarding_completed_at": now.isoformat(),
        }
        state.in_progress = False
        state.completed = True
        state.completion_time = now
        await self._save_state(chat, {"onboarding": state.to_json(), "group_info": group_info})
        logger.info(
            "Group onboarding completed",
            thread_id=chat.external_id,
            fields=list(state.fields_collected),
        )
        await self.delivery.deliver(
            self.config.group_onboarding_flow().agentic_settings.final_message, context
        )

    def _field(self, state: OnboardingState, field_id: str) -> OnboardingField:
        if field_id in state.field_definitions:
            return state.field_definitions[field_id]
        configured = self.config.group_onboarding_flow().agentic_settings.user_fields
        for field in configured:
            if field.id == field_id:
                return field
        return OnboardingField(id=field_id, description=field_id)

    async def _ask(
        self, field: OnboardingField, history: list[ThreadMessage], context: DeliveryContext
    ) -> None:
        question = field.description or field.label or field.id
        system = self.config.group_onboarding_flow().agentic_settings.system_prompt
        messages = format_conversation(
            history[-QUESTION_HISTORY_LIMIT:], self.agent_handle, "group"
        )
        messages.append(
            {
                "role": "user",
                "content": (
                    f'Ask the group about "{field.description}" in a natural, friendly way. '
                    "Reply with the question only, without any preamble."
                ),
            }
        )
        try:
            generated = await self.reasoning.complete(
                system, messages, temperature=0.7, max_tokens=150
            )
            question = generated or question
        except ReasoningServiceError as e:
            logger.warning("Group question generation failed", field_id=field.id, error=str(e))

        await self.delivery.deliver(question, context)
