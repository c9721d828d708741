"""
Conversation store backed by PostgreSQL.

Users are keyed by normalized phone handle, chats by external thread id.
Metadata updates are read-merge-write; callers that need them serialized
hold the chat lock (see ChatLockRegistry).
"""

from enum import Enum
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from agent_core.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from agent_core.db.pool import get_db_transaction
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.api.webhook_request import WebhookPayload
from agent_core.models.domain.conversation_domain import (
    Chat,
    ChatMetadata,
    ConversationUser,
    MemoryEntry,
    Participant,
    PersistResult,
    Project,
    ThreadMessage,
    ThreadType,
    UserMetadata,
    normalize_handle,
)

logger = get_logger(__name__)


class ConversationRepositoryError(DatabaseError):
    """Raised when a conversation record cannot be written or found."""


class MemoryScope(str, Enum):
    USER = "user"
    CHAT = "chat"


# (table, key column) per memory scope
_MEMORY_TARGETS = {
    MemoryScope.USER: ("conversation_users", "phone_number"),
    MemoryScope.CHAT: ("chats", "external_id"),
}

_PROJECT_COLUMNS = "id, chat_id, name, description, is_live, attributes, created_at"
_PROJECT_UPDATABLE = {"name", "description", "is_live"}


def _memory_map(raw: dict | None) -> dict[str, MemoryEntry]:
    entries: dict[str, MemoryEntry] = {}
    for field_id, item in (raw or {}).items():
        if isinstance(item, dict) and isinstance(item.get("value"), str):
            entries[field_id] = MemoryEntry.model_validate(item)
        elif isinstance(item, str):
            entries[field_id] = MemoryEntry(value=item)
    return entries


def _row_to_user(row: dict | None) -> ConversationUser | None:
    if not row:
        return None
    return ConversationUser(
        id=str(row["id"]),
        phone_number=row.get("phone_number") or "",
        name=row.get("name"),
        service=row.get("service"),
        metadata=UserMetadata.model_validate(row.get("metadata") or {}),
        memory=_memory_map(row.get("memory")),
        created_at=row.get("created_at"),
    )


def _row_to_chat(row: dict | None) -> Chat | None:
    if not row:
        return None
    return Chat(
        id=str(row["id"]),
        external_id=row.get("external_id") or "",
        type=ThreadType(row.get("type") or "individual"),
        name=row.get("name"),
        service=row.get("service"),
        metadata=ChatMetadata.model_validate(row.get("metadata") or {}),
        memory=_memory_map(row.get("memory")),
        created_at=row.get("created_at"),
    )


def _row_to_project(row: dict) -> Project:
    return Project(
        id=str(row["id"]),
        chat_id=str(row["chat_id"]),
        name=row["name"],
        description=row.get("description"),
        is_live=bool(row.get("is_live")),
        attributes=row.get("attributes") or {},
        created_at=row.get("created_at"),
    )


def _row_to_message(row: dict) -> ThreadMessage:
    created_at = row.get("created_at")
    return ThreadMessage(
        message_id=row.get("external_id") or str(row["id"]),
        content=row.get("content") or "",
        message_type=row.get("message_type") or "text",
        message_content=row.get("rich_content") or {},
        sender_number=row.get("sender_number") or "",
        sender_name=row.get("sender_name"),
        timestamp=created_at.isoformat() if created_at else None,
    )


class ConversationRepository:
    """Store adapter for users, chats, messages, projects and memory."""

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user_by_phone(
        self, phone_number: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> ConversationUser | None:
        row = await fetch_one(
            "SELECT * FROM conversation_users WHERE phone_number = %s",
            (normalize_handle(phone_number),),
            connection=connection,
        )
        return _row_to_user(row)

    async def get_or_create_user(
        self,
        phone_number: str,
        name: str | None,
        service: str | None,
        metadata: dict[str, Any] | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> tuple[ConversationUser, bool]:
        """Return the user for a handle, creating it on first sight."""
        handle = normalize_handle(phone_number)
        existing = await self.get_user_by_phone(handle, connection=connection)
        if existing:
            if name and existing.name != name:
                await execute_query(
                    "UPDATE conversation_users SET name = %s WHERE id = %s",
                    (name, existing.id),
                    connection=connection,
                )
                logger.info("User display name refreshed", user_id=existing.id)
                existing.name = name
            return existing, False

        row = await fetch_one(
            """
            INSERT INTO conversation_users (name, phone_number, service, metadata, memory)
            VALUES (%s, %s, %s, %s, '{}'::jsonb)
            ON CONFLICT (phone_number) DO UPDATE SET phone_number = EXCLUDED.phone_number
            RETURNING *
            """,
            (name, handle, service, Jsonb(metadata or {})),
            connection=connection,
        )
        user = _row_to_user(row)
        if user is None:
            raise ConversationRepositoryError(
                "Failed to create conversation user", operation="create_user"
            )
        logger.info("Conversation user created", user_id=user.id)
        return user, True

    async def merge_user_metadata(self, phone_number: str, patch: dict[str, Any]) -> bool:
        """Shallow-merge patch into the user's metadata."""
        affected = await execute_query(
            """
            UPDATE conversation_users
            SET metadata = COALESCE(metadata, '{}'::jsonb) || %s
            WHERE phone_number = %s
            """,
            (Jsonb(patch), normalize_handle(phone_number)),
        )
        return affected > 0

    # ------------------------------------------------------------------
    # Chats and participants
    # ------------------------------------------------------------------

    async def get_chat(
        self, external_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> Chat | None:
        row = await fetch_one(
            "SELECT * FROM chats WHERE external_id = %s", (external_id,), connection=connection
        )
        return _row_to_chat(row)

    async def get_or_create_chat(
        self,
        external_id: str,
        thread_type: str,
        service: str | None,
        metadata: dict[str, Any] | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> tuple[Chat, bool]:
        existing = await self.get_chat(external_id, connection=connection)
        if existing:
            return existing, False

        chat_type = "group" if thread_type == ThreadType.GROUP.value else "individual"
        row = await fetch_one(
            """
            INSERT INTO chats (type, external_id, service, metadata, memory)
            VALUES (%s, %s, %s, %s, '{}'::jsonb)
            ON CONFLICT (external_id) DO UPDATE SET external_id = EXCLUDED.external_id
            RETURNING *
            """,
            (chat_type, external_id, service, Jsonb(metadata or {})),
            connection=connection,
        )
        chat = _row_to_chat(row)
        if chat is None:
            raise ConversationRepositoryError("Failed to create chat", operation="create_chat")
        logger.info("Chat created", chat_id=chat.id, thread_id=external_id, chat_type=chat_type)
        return chat, True

    async def list_chats(self) -> list[Chat]:
        rows = await fetch_all("SELECT * FROM chats ORDER BY created_at")
        return [_row_to_chat(row) for row in rows]

    async def merge_chat_metadata(self, chat_id: str, patch: dict[str, Any]) -> bool:
        """Shallow-merge patch into the chat's metadata."""
        affected = await execute_query(
            "UPDATE chats SET metadata = COALESCE(metadata, '{}'::jsonb) || %s WHERE id = %s",
            (Jsonb(patch), chat_id),
        )
        return affected > 0

    async def add_participant(
        self, chat_id: str, user_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        await execute_query(
            """
            INSERT INTO chat_participants (chat_id, user_id)
            VALUES (%s, %s)
            ON CONFLICT DO NOTHING
            """,
            (chat_id, user_id),
            connection=connection,
        )

    async def list_participants(self, chat_id: str) -> list[Participant]:
        rows = await fetch_all(
            """
            SELECT u.id, u.name, u.phone_number, u.metadata
            FROM chat_participants cp
            JOIN conversation_users u ON u.id = cp.user_id
            WHERE cp.chat_id = %s
            """,
            (chat_id,),
        )
        return [
            Participant(
                user_id=str(row["id"]),
                name=row.get("name"),
                phone_number=row.get("phone_number") or "",
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def store_message(
        self,
        chat_id: str,
        sender_id: str | None,
        external_id: str,
        content: dict[str, Any],
        message_type: str,
        service: str | None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> str:
        """Append a message; the plain-text column is derived from the content."""
        text = content.get("text") or ""
        if not text:
            text = next((v for v in content.values() if isinstance(v, str) and v), "")

        row = await fetch_one(
            """
            INSERT INTO messages (chat_id, sender_id, external_id, content,
                                  message_type, service, rich_content)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (chat_id, sender_id, external_id, text, message_type, service, Jsonb(content)),
            connection=connection,
        )
        if not row:
            raise ConversationRepositoryError("Failed to store message", operation="store_message")
        return str(row["id"])

    async def store_agent_message(
        self, thread_id: str, agent_handle: str, text: str, service: str | None, message_id: str
    ) -> str | None:
        """Record an outbound agent message against the chat it was sent to."""
        chat = await self.get_chat(thread_id)
        if chat is None:
            logger.warning("Agent message for unknown chat not stored", thread_id=thread_id)
            return None
        agent_user = None
        if agent_handle:
            agent_user = await self.get_user_by_phone(agent_handle)
        return await self.store_message(
            chat.id,
            agent_user.id if agent_user else None,
            message_id,
            {"text": text},
            "text",
            service,
        )

    @with_db_retry(max_retries=2)
    async def list_recent_messages(self, thread_id: str, limit: int) -> list[ThreadMessage]:
        """Most recent messages of a thread, oldest first."""
        rows = await fetch_all(
            """
            SELECT m.id, m.external_id, m.content, m.message_type, m.rich_content,
                   m.created_at, u.phone_number AS sender_number, u.name AS sender_name
            FROM messages m
            JOIN chats c ON c.id = m.chat_id
            LEFT JOIN conversation_users u ON u.id = m.sender_id
            WHERE c.external_id = %s
            ORDER BY m.created_at DESC
            LIMIT %s
            """,
            (thread_id, limit),
        )
        return [_row_to_message(row) for row in reversed(rows)]

    async def process_inbound(self, payload: WebhookPayload, agent_handle: str) -> PersistResult:
        """
        Store an inbound message with its user, chat and participant link.

        Runs in one transaction so a failure leaves no partial records.
        """
        sender = normalize_handle(payload.sender_number)
        is_agent = payload.is_from_agent or (bool(agent_handle) and sender == agent_handle)
        base_metadata = {"a1_account_id": payload.a1_account_id} if payload.a1_account_id else {}

        try:
            async with await get_db_transaction() as conn:
                user, _ = await self.get_or_create_user(
                    sender,
                    payload.sender_name or None,
                    payload.service,
                    base_metadata,
                    connection=conn,
                )
                chat, is_new_chat = await self.get_or_create_chat(
                    payload.thread_id,
                    payload.thread_type,
                    payload.service,
                    base_metadata,
                    connection=conn,
                )
                if not is_agent:
                    await self.add_participant(chat.id, user.id, connection=conn)
                await self.store_message(
                    chat.id,
                    user.id,
                    payload.message_id,
                    payload.message_content.to_json(),
                    payload.message_type,
                    payload.service,
                    connection=conn,
                )
        except psycopg.Error as e:
            logger.error("Inbound message transaction failed", error=str(e))
            raise ConversationRepositoryError(
                f"Inbound message not stored: {e}", operation="process_inbound"
            ) from e

        return PersistResult(chat_id=chat.id, is_new_chat=is_new_chat)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def get_projects_by_chat(self, chat_id: str) -> list[Project]:
        rows = await fetch_all(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE chat_id = %s ORDER BY created_at",
            (chat_id,),
        )
        return [_row_to_project(row) for row in rows]

    async def create_project(
        self,
        chat_id: str,
        name: str,
        description: str | None,
        attributes: dict[str, Any] | None = None,
    ) -> str:
        row = await fetch_one(
            """
            INSERT INTO projects (chat_id, name, description, is_live, attributes)
            VALUES (%s, %s, %s, true, %s)
            RETURNING id
            """,
            (chat_id, name, description, Jsonb(attributes or {})),
        )
        if not row:
            raise ConversationRepositoryError("Failed to create project", operation="create_project")
        project_id = str(row["id"])
        logger.info("Project created", project_id=project_id, chat_id=chat_id)
        return project_id

    async def update_project(self, project_id: str, updates: dict[str, Any]) -> bool:
        """Update basic project columns; unknown keys are ignored."""
        columns = {key: value for key, value in updates.items() if key in _PROJECT_UPDATABLE}
        if not columns:
            return False
        assignments = ", ".join(f"{column} = %s" for column in columns)
        affected = await execute_query(
            f"UPDATE projects SET {assignments} WHERE id = %s",
            (*columns.values(), project_id),
        )
        return affected > 0

    async def update_project_attributes(
        self, project_id: str, attributes: dict[str, Any], replace: bool = False
    ) -> bool:
        if replace:
            query = "UPDATE projects SET attributes = %s WHERE id = %s"
        else:
            query = (
                "UPDATE projects SET attributes = COALESCE(attributes, '{}'::jsonb) || %s "
                "WHERE id = %s"
            )
        affected = await execute_query(query, (Jsonb(attributes), project_id))
        return affected > 0

    async def log_project_event(self, project_id: str, event_type: str, details: str) -> str:
        event_id = await fetch_val(
            """
            INSERT INTO project_history (project_id, event_type, details)
            VALUES (%s, %s, %s)
            RETURNING id
            """,
            (project_id, event_type, details),
        )
        if event_id is None:
            raise ConversationRepositoryError(
                "Failed to log project event", operation="log_project_event"
            )
        return str(event_id)

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def get_all_memory(self, scope: MemoryScope, key: str) -> dict[str, MemoryEntry]:
        table, column = _MEMORY_TARGETS[scope]
        if scope is MemoryScope.USER:
            key = normalize_handle(key)
        row = await fetch_one(f"SELECT memory FROM {table} WHERE {column} = %s", (key,))
        return _memory_map(row["memory"] if row else None)

    async def get_memory_value(
        self, scope: MemoryScope, key: str, field_id: str
    ) -> MemoryEntry | None:
        return (await self.get_all_memory(scope, key)).get(field_id)

    async def set_memory_value(
        self, scope: MemoryScope, key: str, field_id: str, entry: MemoryEntry
    ) -> bool:
        table, column = _MEMORY_TARGETS[scope]
        if scope is MemoryScope.USER:
            key = normalize_handle(key)
        affected = await execute_query(
            f"""
            UPDATE {table}
            SET memory = COALESCE(memory, '{{}}'::jsonb) || jsonb_build_object(%s::text, %s::jsonb)
            WHERE {column} = %s
            """,
            (field_id, Jsonb(entry.to_json()), key),
        )
        if affected == 0:
            logger.warning("Memory target not found", scope=scope.value, field_id=field_id)
        return affected > 0

    async def delete_memory_value(self, scope: MemoryScope, key: str, field_id: str) -> bool:
        table, column = _MEMORY_TARGETS[scope]
        if scope is MemoryScope.USER:
            key = normalize_handle(key)
        affected = await execute_query(
            f"UPDATE {table} SET memory = COALESCE(memory, '{{}}'::jsonb) - %s WHERE {column} = %s",
            (field_id, key),
        )
        return affected > 0
