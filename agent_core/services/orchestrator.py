"""
Per-message control flow.

persist → (agent message | active group onboarding) early exits →
project resolution → onboarding check → triage → workflow → delivery.
Memory enrichment is started as a supervised background task and never
awaited here. State changes for one chat run under that chat's lock.
"""

from dataclasses import dataclass

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import bind_message_context, get_logger
from agent_core.models.api.webhook_request import WebhookPayload
from agent_core.models.domain.conversation_domain import ThreadMessage, normalize_handle
from agent_core.models.domain.intent_domain import (
    NoReplyIntent,
    OnboardingFlowIntent,
    ProjectFlowIntent,
)
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.agent_config import AgentConfigProvider
from agent_core.services.delivery_service import DeliveryContext, DeliveryService
from agent_core.services.infrastructure.background_tasks import BackgroundTaskSupervisor
from agent_core.services.infrastructure.chat_locks import ChatLockRegistry
from agent_core.services.memory_service import MemoryService
from agent_core.services.message_persistence import MessagePersistence
from agent_core.services.onboarding.errors import OnboardingServiceError
from agent_core.services.onboarding.group import GroupOnboarding
from agent_core.services.onboarding.individual import IndividualOnboarding
from agent_core.services.project_service import ProjectService, ProjectServiceError
from agent_core.services.reply_service import ReplyService
from agent_core.services.triage_service import TriageService

logger = get_logger(__name__)

TRIAGE_FAILURE_MESSAGE = (
    "Sorry, I'm having trouble processing your request right now. Please try again later."
)
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."

# Group messages the gateway attributes to the agent itself arrive with this sender
GROUP_AGENT_SENDER = "+"


@dataclass(slots=True)
class HandleResult:
    thread_id: str
    action: str
    chat_id: str | None = None
    intent: str | None = None
    replied: bool = False


class MessageOrchestrator:
    def __init__(
        self,
        *,
        store: ConversationRepository | None,
        persistence: MessagePersistence,
        triage: TriageService,
        projects: ProjectService,
        individual_onboarding: IndividualOnboarding,
        group_onboarding: GroupOnboarding,
        memory: MemoryService,
        replies: ReplyService,
        delivery: DeliveryService,
        config: AgentConfigProvider,
        locks: ChatLockRegistry,
        tasks: BackgroundTaskSupervisor,
        agent_number: str | None = None,
    ):
        self.store = store
        self.persistence = persistence
        self.triage = triage
        self.projects = projects
        self.individual_onboarding = individual_onboarding
        self.group_onboarding = group_onboarding
        self.memory = memory
        self.replies = replies
        self.delivery = delivery
        self.config = config
        self.locks = locks
        self.tasks = tasks
        self.agent_number = agent_number if agent_number is not None else settings.AGENT_NUMBER
        self.agent_handle = normalize_handle(self.agent_number)

    def _normalize(self, payload: WebhookPayload) -> WebhookPayload:
        if payload.thread_type == "group" and payload.sender_number == GROUP_AGENT_SENDER:
            return payload.model_copy(
                update={"sender_number": self.agent_number, "is_from_agent": True}
            )
        return payload

    def _is_agent(self, payload: WebhookPayload) -> bool:
        if payload.is_from_agent:
            return True
        return bool(self.agent_handle) and normalize_handle(payload.sender_number) == self.agent_handle

    async def handle_incoming(self, payload: WebhookPayload) -> HandleResult:
        """
        Process one inbound webhook message end to end.

        Unexpected errors are logged, answered with an apology through the
        normal channel, and re-raised for the HTTP layer.
        """
        payload = self._normalize(payload)
        bind_message_context(payload.thread_id, payload.message_id)
        context = DeliveryContext(
            thread_id=payload.thread_id,
            thread_type=payload.thread_type,
            recipient=payload.sender_number,
            service=payload.service,
        )

        if self._is_agent(payload):
            return await self._store_agent_message(payload)

        try:
            return await self._handle_user_message(payload, context)
        except Exception as e:
            logger.error(
                "Unexpected error handling message",
                thread_id=payload.thread_id,
                message_id=payload.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.delivery.deliver(UNEXPECTED_ERROR_MESSAGE, context)
            raise

    async def _store_agent_message(self, payload: WebhookPayload) -> HandleResult:
        chat_id = None
        if self.store is not None:
            try:
                result = await self.store.process_inbound(payload, self.agent_handle)
                chat_id = result.chat_id
            except Exception as e:
                logger.error("Storing agent message failed", thread_id=payload.thread_id, error=str(e))
        logger.info("Agent-authored message recorded", thread_id=payload.thread_id)
        return HandleResult(thread_id=payload.thread_id, action="agent_message", chat_id=chat_id)

    async def _handle_user_message(
        self, payload: WebhookPayload, context: DeliveryContext
    ) -> HandleResult:
        persisted = await self.persistence.persist(payload)
        result = HandleResult(thread_id=payload.thread_id, action="reply", chat_id=persisted.chat_id)

        self.tasks.spawn(
            self.memory.process_message_for_memory_updates(
                content=payload.content,
                sender_number=payload.sender_number,
                thread_id=payload.thread_id,
                settings=self.config.memory_settings(),
            ),
            name=f"memory:{payload.thread_id}:{payload.message_id}",
        )

        async with self.locks.hold(payload.thread_id):
            messages = await self.persistence.get_thread_messages(payload.thread_id)

            if payload.thread_type == "group" and await self._run_group_onboarding(
                payload, persisted.is_new_chat, messages, context
            ):
                result.action = "group_onboarding"
                result.replied = True
                return result

            known_projects = []
            if persisted.chat_id:
                try:
                    await self.projects.resolve(messages, persisted.chat_id)
                    known_projects = await self.projects.list_projects(persisted.chat_id)
                except ProjectServiceError as e:
                    logger.warning(
                        "Project resolution skipped", thread_id=payload.thread_id, error=str(e)
                    )

            if payload.thread_type != "group" and await self._needs_onboarding(payload):
                reply = await self.individual_onboarding.handle(messages, payload.sender_number)
                await self.delivery.deliver(reply, context)
                result.action = "onboarding"
                result.replied = True
                return result

            try:
                intent = await self.triage.classify(messages, known_projects)
            except Exception as e:
                logger.error("Triage failed", thread_id=payload.thread_id, error=str(e))
                await self.delivery.deliver(TRIAGE_FAILURE_MESSAGE, context)
                result.action = "triage_failed"
                result.replied = True
                return result

            result.intent = intent.kind
            project_context = None

            if isinstance(intent, NoReplyIntent):
                result.action = "no_reply"
                return result

            if isinstance(intent, OnboardingFlowIntent) and payload.thread_type != "group":
                reply = await self.individual_onboarding.start(payload.sender_number)
                await self.delivery.deliver(reply, context)
                result.action = "onboarding"
                result.replied = True
                return result

            if isinstance(intent, ProjectFlowIntent):
                outcome = await self.projects.apply_project_flow(persisted.chat_id, intent)
                if not outcome.fall_through:
                    project_context = outcome.context_line()
                    result.action = "project_flow"

            await self._reply(payload, persisted.chat_id, messages, context, project_context)
            result.replied = True
            return result

    async def _run_group_onboarding(
        self,
        payload: WebhookPayload,
        is_new_chat: bool,
        messages: list[ThreadMessage],
        context: DeliveryContext,
    ) -> bool:
        try:
            if await self.group_onboarding.is_in_progress(payload.thread_id):
                return await self.group_onboarding.process_answer(
                    payload.thread_id, payload.content, messages, context
                )
            return await self.group_onboarding.start_if_new(
                payload.thread_id, is_new_chat, context
            )
        except OnboardingServiceError as e:
            logger.warning("Group onboarding skipped", thread_id=payload.thread_id, error=str(e))
            return False

    async def _needs_onboarding(self, payload: WebhookPayload) -> bool:
        try:
            return await self.individual_onboarding.needs_onboarding(payload.sender_number)
        except OnboardingServiceError as e:
            logger.warning("Onboarding check skipped", thread_id=payload.thread_id, error=str(e))
            return False

    async def _reply(
        self,
        payload: WebhookPayload,
        chat_id: str | None,
        messages: list[ThreadMessage],
        context: DeliveryContext,
        project_context: str | None,
    ) -> None:
        reply = await self.replies.generate_reply(
            messages,
            thread_id=payload.thread_id,
            thread_type=payload.thread_type,
            chat_id=chat_id,
            sender_number=payload.sender_number,
            project_context=project_context,
        )
        await self.delivery.deliver(reply, context)
