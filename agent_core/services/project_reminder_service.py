"""
Scheduled follow-ups about live projects.

An external scheduler calls POST /cron/project-reminders. Every chat with
live projects gets one generated reminder listing them oldest first,
delivered through the normal reply path.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

from agent_core.config import settings
from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.conversation_domain import Chat, Project, ThreadType
from agent_core.repositories.conversation_repository import ConversationRepository
from agent_core.services.delivery_service import DeliveryContext, DeliveryService
from agent_core.services.infrastructure.chat_locks import ChatLockRegistry
from agent_core.services.project_service import ProjectServiceError
from agent_core.services.reply_service import ReplyService

logger = get_logger(__name__)

REMINDER_INSTRUCTION = (
    "This is a scheduled check-in about active projects. The following projects are "
    "currently active in this chat:\n\n{projects}\n\n"
    "Remind the user about these projects in a friendly, helpful way. Suggest they update "
    "the status of these projects or mark them as completed if they're done. Make it feel "
    "like a natural follow-up."
)


@dataclass(slots=True)
class ReminderRunStats:
    total_chats: int = 0
    chats_with_active_projects: int = 0
    reminders_sent: int = 0


def describe_age(created_at: datetime | None, now: datetime) -> str:
    if created_at is None:
        return "recently"
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    days = (now - created_at).days
    if days <= 0:
        return "today"
    if days == 1:
        return "yesterday"
    return f"{days} days ago"


def build_reminder_instruction(projects: list[Project], now: datetime) -> str:
    oldest_first = sorted(projects, key=lambda p: p.created_at or now)
    listing = "\n".join(
        f'- "{p.name}" (created {describe_age(p.created_at, now)})' for p in oldest_first
    )
    return REMINDER_INSTRUCTION.format(projects=listing)


class ProjectReminderService:
    def __init__(
        self,
        store: ConversationRepository | None,
        replies: ReplyService,
        delivery: DeliveryService,
        locks: ChatLockRegistry,
        delay_seconds: float | None = None,
    ):
        self.store = store
        self.replies = replies
        self.delivery = delivery
        self.locks = locks
        self.delay_seconds = (
            settings.REMINDER_DELAY_SECONDS if delay_seconds is None else delay_seconds
        )

    async def send_reminders(self) -> ReminderRunStats:
        """
        Remind every chat that still has live projects.

        A failing chat is logged and skipped.

        Raises:
            ProjectServiceError: the store is unavailable or chats cannot be listed
        """
        if self.store is None:
            raise ProjectServiceError("Conversation store unavailable", recoverable=False)

        try:
            chats = await self.store.list_chats()
        except DatabaseError as e:
            raise ProjectServiceError(f"Could not list chats: {e}") from e

        stats = ReminderRunStats(total_chats=len(chats))
        for chat in chats:
            try:
                live = [p for p in await self.store.get_projects_by_chat(chat.id) if p.is_live]
            except DatabaseError as e:
                logger.error("Loading projects for reminder failed", chat_id=chat.id, error=str(e))
                continue
            if not live:
                continue

            if stats.chats_with_active_projects and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)
            stats.chats_with_active_projects += 1

            try:
                if await self._remind(chat, live):
                    stats.reminders_sent += 1
            except DatabaseError as e:
                logger.error("Project reminder failed", chat_id=chat.id, error=str(e))

        logger.info(
            "Project reminders processed",
            total_chats=stats.total_chats,
            chats_with_active_projects=stats.chats_with_active_projects,
            reminders_sent=stats.reminders_sent,
        )
        return stats

    async def _remind(self, chat: Chat, projects: list[Project]) -> bool:
        recipient = ""
        if chat.type is ThreadType.INDIVIDUAL:
            participants = await self.store.list_participants(chat.id)
            if not participants:
                logger.warning("No recipient for reminder", chat_id=chat.id)
                return False
            recipient = participants[0].phone_number

        instruction = build_reminder_instruction(projects, datetime.now(UTC))
        async with self.locks.hold(chat.external_id):
            reminder = await self.replies.generate_reply(
                [],
                thread_id=chat.external_id,
                thread_type=chat.type.value,
                chat_id=chat.id,
                sender_number=recipient,
                project_context=instruction,
                fallback=None,
            )
            if not reminder:
                return False
            context = DeliveryContext(
                thread_id=chat.external_id,
                thread_type=chat.type.value,
                recipient=recipient,
                service=chat.service or "whatsapp",
            )
            sent = await self.delivery.deliver(reminder, context)

        logger.info("Project reminder sent", chat_id=chat.id, projects=len(projects))
        return sent > 0
