"""
Memory merge engine.

Suggested field updates from the reasoning service are reconciled against
stored user and chat memory one field at a time. Single-valued facts are
replaced (keeping the prior value), accumulating fields are appended to.
"""

import re
from dataclasses import dataclass

from agent_core.db.helpers import DatabaseError
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.agent_config_domain import MemoryField, MemorySettings, MergePolicy
from agent_core.models.domain.conversation_domain import MemoryEntry, utc_now
from agent_core.repositories.conversation_repository import ConversationRepository, MemoryScope
from agent_core.services.infrastructure.chat_locks import ChatLockRegistry
from agent_core.services.openai_service import OpenAIService, ReasoningServiceError

logger = get_logger(__name__)

ACCUMULATING_TOKENS = ("preferences", "likes", "dislikes", "topics")
_DIGIT = re.compile(r"\d")

MEMORY_PROMPT = """You maintain long-term memory about a user and the chat they are in.
Read the new message and decide whether it reveals information for any of the fields below.

User memory fields:
{user_fields}

Chat memory fields:
{chat_fields}

Only suggest an update when the message clearly states new or corrected information.
Respond in JSON with exactly this shape:
{{"userMemoryUpdates": [{{"id": "<field id>", "newValue": "<value>"}}], "chatMemoryUpdates": [{{"id": "<field id>", "newValue": "<value>"}}]}}
Use empty arrays when nothing should change."""


@dataclass(slots=True)
class AppliedUpdate:
    field_id: str
    value: str
    previous_value: str | None


def resolve_merge_policy(field_id: str, field: MemoryField | None = None) -> MergePolicy:
    """Declared policy wins; otherwise infer it from the field id."""
    if field is not None and field.merge_policy is not None:
        return field.merge_policy
    lowered = field_id.lower()
    if any(token in lowered for token in ACCUMULATING_TOKENS) or _DIGIT.search(lowered):
        return MergePolicy.ACCUMULATE
    return MergePolicy.REPLACE


def merge_memory_value(
    existing: MemoryEntry | None, new_value: str, policy: MergePolicy
) -> MemoryEntry | None:
    """
    Merge one suggested value into a stored entry.

    Returns the entry to write, or None when nothing changes.
    """
    if existing is None:
        return MemoryEntry(value=new_value)

    old_value = existing.value
    if new_value == old_value:
        return None

    if policy is MergePolicy.ACCUMULATE:
        if new_value.lower() in old_value.lower():
            return None
        merged = f"{old_value}. {new_value}" if old_value else new_value
        return MemoryEntry(value=merged, updated_at=utc_now(), previous_value=old_value)

    return MemoryEntry(value=new_value, updated_at=utc_now(), previous_value=old_value)


def merge_suggestions(
    existing: dict[str, MemoryEntry],
    suggested: dict[str, str],
    fields: list[MemoryField] | None = None,
) -> dict[str, MemoryEntry]:
    """
    Apply suggested values to a memory map.

    Returns only the entries that changed; `existing` is not modified.
    """
    declared = {field.id: field for field in fields or []}
    applied: dict[str, MemoryEntry] = {}
    for field_id, new_value in suggested.items():
        policy = resolve_merge_policy(field_id, declared.get(field_id))
        entry = merge_memory_value(existing.get(field_id), new_value, policy)
        if entry is not None:
            applied[field_id] = entry
    return applied


def _field_listing(fields: list[MemoryField], current: dict[str, MemoryEntry]) -> str:
    if not fields:
        return "(none)"
    lines = []
    for field in fields:
        entry = current.get(field.id)
        lines.append(
            f"- id: {field.id}\n  title: {field.title}\n  description: {field.description}\n"
            f"  current_value: {entry.value if entry else ''}"
        )
    return "\n".join(lines)


def parse_memory_suggestions(
    updates: object, allowed: list[MemoryField]
) -> dict[str, str]:
    """Keep suggestions that name a configured field and carry a string value."""
    allowed_ids = {field.id for field in allowed}
    suggestions: dict[str, str] = {}
    if not isinstance(updates, list):
        return suggestions
    for item in updates:
        if not isinstance(item, dict):
            continue
        field_id = item.get("id")
        value = item.get("newValue")
        if field_id in allowed_ids and isinstance(value, str) and value.strip():
            suggestions[field_id] = value.strip()
    return suggestions


class MemoryService:
    def __init__(
        self,
        store: ConversationRepository | None,
        reasoning: OpenAIService,
        locks: ChatLockRegistry,
    ):
        self.store = store
        self.reasoning = reasoning
        self.locks = locks

    async def _read_memory(self, sender_number: str, thread_id: str):
        user_memory = await self.store.get_all_memory(MemoryScope.USER, sender_number)
        chat_memory = await self.store.get_all_memory(MemoryScope.CHAT, thread_id)
        return user_memory, chat_memory

    async def process_message_for_memory_updates(
        self,
        *,
        content: str,
        sender_number: str,
        thread_id: str,
        settings: MemorySettings,
    ) -> dict[str, list[AppliedUpdate]]:
        """
        Suggest and apply memory updates for one inbound message.

        Runs off the reply path. The model call happens outside the chat
        lock; only the re-read, merge and writes hold it. Store and
        reasoning failures are logged and leave memory unchanged.
        """
        applied: dict[str, list[AppliedUpdate]] = {"user": [], "chat": []}
        user_fields = settings.enabled_user_fields()
        chat_fields = settings.enabled_chat_fields()

        if self.store is None or not content.strip() or not (user_fields or chat_fields):
            return applied

        try:
            user_memory, chat_memory = await self._read_memory(sender_number, thread_id)
        except DatabaseError as e:
            logger.error("Reading memory failed", thread_id=thread_id, error=str(e))
            return applied

        system = MEMORY_PROMPT.format(
            user_fields=_field_listing(user_fields, user_memory),
            chat_fields=_field_listing(chat_fields, chat_memory),
        )
        try:
            response = await self.reasoning.complete_json(
                system, [{"role": "user", "content": content}], temperature=0.2
            )
        except ReasoningServiceError as e:
            logger.warning("Memory suggestion call failed", thread_id=thread_id, error=str(e))
            return applied

        user_suggestions = parse_memory_suggestions(response.get("userMemoryUpdates"), user_fields)
        chat_suggestions = parse_memory_suggestions(response.get("chatMemoryUpdates"), chat_fields)
        if not (user_suggestions or chat_suggestions):
            return applied

        async with self.locks.hold(thread_id):
            try:
                user_memory, chat_memory = await self._read_memory(sender_number, thread_id)
            except DatabaseError as e:
                logger.error("Re-reading memory failed", thread_id=thread_id, error=str(e))
                return applied

            targets = (
                ("user", MemoryScope.USER, sender_number, user_memory, user_suggestions, user_fields),
                ("chat", MemoryScope.CHAT, thread_id, chat_memory, chat_suggestions, chat_fields),
            )
            for label, scope, key, current, suggestions, fields in targets:
                for field_id, entry in merge_suggestions(current, suggestions, fields).items():
                    try:
                        written = await self.store.set_memory_value(scope, key, field_id, entry)
                    except DatabaseError as e:
                        logger.error(
                            "Writing memory failed",
                            scope=scope.value,
                            field_id=field_id,
                            error=str(e),
                        )
                        continue
                    if written:
                        applied[label].append(
                            AppliedUpdate(field_id, entry.value, entry.previous_value)
                        )

        if applied["user"] or applied["chat"]:
            logger.info(
                "Memory updated",
                thread_id=thread_id,
                user_fields=[u.field_id for u in applied["user"]],
                chat_fields=[u.field_id for u in applied["chat"]],
            )
        return applied
