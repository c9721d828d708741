"""
Response composer and delivery.

Outbound text is optionally split into paragraph chunks; each chunk is
recorded as an agent message before it is handed to the gateway.
"""

import asyncio
import uuid
from dataclasses import dataclass

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.gateway_client import GatewayClient

logger = get_logger(__name__)

# Services that exercise the pipeline without sending anything
SKIP_SEND_SERVICES = frozenset({"web-ui", "__skip_send"})


@dataclass(slots=True)
class DeliveryContext:
    thread_id: str
    thread_type: str
    recipient: str
    service: str


def split_message(text: str, split_paragraphs: bool) -> list[str]:
    if not split_paragraphs:
        return [text] if text.strip() else []
    return [chunk.strip() for chunk in text.split("\n\n") if chunk.strip()]


class DeliveryService:
    def __init__(
        self,
        store: ConversationRepository | None,
        gateway: GatewayClient,
        agent_handle: str | None = None,
        split_paragraphs: bool | None = None,
        chunk_delay: float | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.agent_handle = agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        self.split_paragraphs = (
            settings.SPLIT_PARAGRAPHS if split_paragraphs is None else split_paragraphs
        )
        self.chunk_delay = settings.CHUNK_DELAY_SECONDS if chunk_delay is None else chunk_delay

    async def deliver(self, text: str, context: DeliveryContext) -> int:
        """
        Record and send a reply.

        Args:
            text: Reply text produced by the agent
            context: Where the reply goes

        Returns:
            Number of chunks the gateway accepted
        """
        if context.service in SKIP_SEND_SERVICES:
            logger.info("Skipping send for service", service=context.service)
            return 0

        chunks = split_message(text, self.split_paragraphs)
        sent = 0
        for index, chunk in enumerate(chunks):
            if index > 0 and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

            await self._record(chunk, context)

            try:
                if context.thread_type == "group":
                    await self.gateway.send_group(chunk, context.thread_id)
                else:
                    await self.gateway.send_individual(chunk, context.recipient)
                sent += 1
            except Exception as e:
                logger.error(
                    "Sending message chunk failed",
                    thread_id=context.thread_id,
                    chunk_index=index,
                    error=str(e),
                )

        logger.info(
            "Reply delivered",
            thread_id=context.thread_id,
            chunks=len(chunks),
            sent=sent,
        )
        return sent

    async def _record(self, chunk: str, context: DeliveryContext) -> None:
        if self.store is None:
            return
        try:
            await self.store.store_agent_message(
                context.thread_id,
                self.agent_handle,
                chunk,
                context.service,
                f"agent-{uuid.uuid4()}",
            )
        except Exception as e:
            logger.error(
                "Storing agent message failed",
                thread_id=context.thread_id,
                error=str(e),
            )
