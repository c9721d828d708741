"""
Inbound message persistence with ephemeral fallback.
"""

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.api.webhook_request import WebhookPayload
from agent_core.models.domain.conversation_domain import (
    PersistResult,
    ThreadMessage,
    normalize_handle,
)
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.ephemeral_cache import EphemeralCache

logger = get_logger(__name__)


def to_thread_message(payload: WebhookPayload, agent_handle: str, agent_name: str) -> ThreadMessage:
    is_agent = bool(agent_handle) and normalize_handle(payload.sender_number) == agent_handle
    return ThreadMessage(
        message_id=payload.message_id,
        content=payload.content,
        message_type=payload.message_type,
        message_content=payload.message_content.to_json(),
        sender_number=payload.sender_number,
        sender_name=agent_name if is_agent else payload.sender_name,
        timestamp=payload.timestamp,
    )


class MessagePersistence:
    """Writes inbound messages to the store, always mirroring them into the cache."""

    def __init__(
        self,
        store: ConversationRepository | None,
        cache: EphemeralCache,
        agent_handle: str | None = None,
        agent_name: str | None = None,
        max_context_messages: int | None = None,
    ):
        self.store = store
        self.cache = cache
        self.agent_handle = normalize_handle(
            agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        )
        self.agent_name = agent_name or settings.AGENT_NAME
        self.max_context_messages = max_context_messages or settings.MAX_CONTEXT_MESSAGES

    async def persist(self, payload: WebhookPayload) -> PersistResult:
        """
        Store the message durably when possible.

        Returns PersistResult with chat_id None when the store was absent
        or failed; the message is then only in the ephemeral cache.
        """
        result = PersistResult(chat_id=None, is_new_chat=False)

        if self.store is not None:
            try:
                result = await self.store.process_inbound(payload, self.agent_handle)
            except Exception as e:
                logger.error(
                    "Durable message write failed, using ephemeral cache",
                    thread_id=payload.thread_id,
                    message_id=payload.message_id,
                    error=str(e),
                )
        else:
            logger.debug("No conversation store, caching message only", thread_id=payload.thread_id)

        self.cache.add(
            payload.thread_id, to_thread_message(payload, self.agent_handle, self.agent_name)
        )
        return result

    async def get_thread_messages(self, thread_id: str) -> list[ThreadMessage]:
        """Recent context window: the store when it has messages, else the cache."""
        if self.store is not None:
            try:
                messages = await self.store.list_recent_messages(thread_id, self.max_context_messages)
                if messages:
                    return messages
            except Exception as e:
                logger.warning(
                    "Reading thread from store failed, using ephemeral cache",
                    thread_id=thread_id,
                    error=str(e),
                )
        return self.cache.get(thread_id)
