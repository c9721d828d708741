"""
Wiring for the message-handling services.

One AgentRuntime is built per process in the app lifespan and stored on
app.state; routes reach the orchestrator through it.
"""

from agent_core.config import settings
from agent_core.db.pool import db_pool
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.agent_config import AgentConfigProvider
from agent_core.services.delivery_service import DeliveryService
from agent_core.services.ephemeral_cache import EphemeralCache
from agent_core.services.gateway_client import GatewayClient
from agent_core.services.infrastructure.background_tasks import BackgroundTaskSupervisor
from agent_core.services.infrastructure.chat_locks import ChatLockRegistry
from agent_core.services.memory_service import MemoryService
from agent_core.services.message_persistence import MessagePersistence
from agent_core.services.onboarding.group import GroupOnboarding
from agent_core.services.onboarding.individual import IndividualOnboarding
from agent_core.services.openai_service import OpenAIService
from agent_core.services.orchestrator import MessageOrchestrator
from agent_core.services.project_reminder_service import ProjectReminderService
from agent_core.services.project_service import ProjectService
from agent_core.services.reply_service import ReplyService
from agent_core.services.triage_service import TriageService

logger = get_logger(__name__)


class AgentRuntime:
    def __init__(
        self,
        *,
        store: ConversationRepository | None,
        reasoning: OpenAIService,
        gateway: GatewayClient,
        config: AgentConfigProvider | None = None,
    ):
        self.store = store
        self.reasoning = reasoning
        self.gateway = gateway
        self.config = config or AgentConfigProvider()
        self.cache = EphemeralCache()
        self.locks = ChatLockRegistry()
        self.tasks = BackgroundTaskSupervisor()

        delivery = DeliveryService(store, gateway)
        replies = ReplyService(store, reasoning, self.config)
        self.reminders = ProjectReminderService(store, replies, delivery, self.locks)
        self.orchestrator = MessageOrchestrator(
            store=store,
            persistence=MessagePersistence(store, self.cache),
            triage=TriageService(reasoning),
            projects=ProjectService(store),
            individual_onboarding=IndividualOnboarding(store, reasoning, self.config),
            group_onboarding=GroupOnboarding(store, reasoning, self.config, delivery),
            memory=MemoryService(store, reasoning, self.locks),
            replies=replies,
            delivery=delivery,
            config=self.config,
            locks=self.locks,
            tasks=self.tasks,
        )

    @classmethod
    def build(cls) -> "AgentRuntime":
        store = ConversationRepository() if db_pool.available else None
        if store is None:
            logger.warning("Conversation store unavailable, running on ephemeral cache only")
        runtime = cls(store=store, reasoning=OpenAIService(), gateway=GatewayClient())
        logger.info(
            "Agent runtime ready",
            store_enabled=store is not None,
            gateway_configured=settings.gateway_configured(),
            config_dir=str(runtime.config.config_dir),
        )
        return runtime

    async def close(self) -> None:
        await self.tasks.drain(timeout=5.0)
        await self.gateway.close()
        await self.reasoning.close()
