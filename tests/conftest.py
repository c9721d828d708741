import json
from typing import Any

import pytest

from agent_core.db.helpers import DatabaseError
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
from agent_core.repositories.conversation_repository import MemoryScope
from agent_core.services.openai_service import ReasoningServiceError

AGENT_NUMBER = "+15550000000"


class FakeStore:
    """In-memory stand-in for ConversationRepository."""

    def __init__(self):
        self.users: dict[str, ConversationUser] = {}
        self.chats: dict[str, Chat] = {}
        self.messages: dict[str, list[ThreadMessage]] = {}
        self.participants: dict[str, list[Participant]] = {}
        self.projects: list[Project] = []
        self.events: list[tuple[str, str, str]] = []
        self.agent_messages: list[tuple[str, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise DatabaseError("store offline", operation="fake")

    # users and chats

    def add_user(self, phone_number: str, name: str = "User", metadata: dict | None = None):
        handle = normalize_handle(phone_number)
        user = ConversationUser(
            id=f"user-{len(self.users) + 1}",
            phone_number=handle,
            name=name,
            metadata=UserMetadata.model_validate(metadata or {}),
        )
        self.users[handle] = user
        return user

    def add_chat(self, external_id: str, thread_type: str = "individual", metadata: dict | None = None):
        chat = Chat(
            id=f"chat-{len(self.chats) + 1}",
            external_id=external_id,
            type=ThreadType(thread_type),
            metadata=ChatMetadata.model_validate(metadata or {}),
        )
        self.chats[external_id] = chat
        return chat

    def _chat_by_id(self, chat_id: str) -> Chat | None:
        return next((c for c in self.chats.values() if c.id == chat_id), None)

    async def get_user_by_phone(self, phone_number, *, connection=None):
        self._check()
        return self.users.get(normalize_handle(phone_number))

    async def merge_user_metadata(self, phone_number, patch):
        self._check()
        user = self.users.get(normalize_handle(phone_number))
        if user is None:
            return False
        merged = {**user.metadata.model_dump(mode="json", exclude_none=True), **patch}
        user.metadata = UserMetadata.model_validate(merged)
        return True

    async def get_chat(self, external_id, *, connection=None):
        self._check()
        return self.chats.get(external_id)

    async def list_chats(self):
        self._check()
        return list(self.chats.values())

    async def merge_chat_metadata(self, chat_id, patch):
        self._check()
        chat = self._chat_by_id(chat_id)
        if chat is None:
            return False
        merged = {**chat.metadata.model_dump(mode="json", exclude_none=True), **patch}
        chat.metadata = ChatMetadata.model_validate(merged)
        return True

    async def list_participants(self, chat_id):
        self._check()
        return list(self.participants.get(chat_id, []))

    # messages

    async def process_inbound(self, payload, agent_handle):
        self._check()
        handle = normalize_handle(payload.sender_number)
        if handle not in self.users:
            self.add_user(handle, payload.sender_name)
        is_new_chat = payload.thread_id not in self.chats
        if is_new_chat:
            thread_type = "group" if payload.thread_type == "group" else "individual"
            self.add_chat(payload.thread_id, thread_type)
        chat = self.chats[payload.thread_id]
        self.messages.setdefault(payload.thread_id, []).append(
            ThreadMessage(
                message_id=payload.message_id,
                content=payload.content,
                sender_number=handle,
                sender_name=payload.sender_name,
                timestamp=payload.timestamp,
            )
        )
        return PersistResult(chat_id=chat.id, is_new_chat=is_new_chat)

    async def list_recent_messages(self, thread_id, limit):
        self._check()
        return self.messages.get(thread_id, [])[-limit:]

    async def store_agent_message(self, thread_id, agent_handle, text, service, message_id):
        self._check()
        self.agent_messages.append((thread_id, text))
        return message_id

    # projects

    async def get_projects_by_chat(self, chat_id):
        self._check()
        return [p for p in self.projects if p.chat_id == chat_id]

    async def create_project(self, chat_id, name, description, attributes=None):
        self._check()
        project = Project(
            id=f"project-{len(self.projects) + 1}",
            chat_id=chat_id,
            name=name,
            description=description,
            attributes=attributes or {},
        )
        self.projects.append(project)
        return project.id

    async def update_project(self, project_id, updates):
        self._check()
        for project in self.projects:
            if project.id == project_id:
                for key in ("name", "description", "is_live"):
                    if key in updates:
                        setattr(project, key, updates[key])
                return True
        return False

    async def update_project_attributes(self, project_id, attributes, replace=False):
        self._check()
        for project in self.projects:
            if project.id == project_id:
                project.attributes = dict(attributes) if replace else {**project.attributes, **attributes}
                return True
        return False

    async def log_project_event(self, project_id, event_type, details):
        self._check()
        self.events.append((project_id, event_type, details))
        return f"event-{len(self.events)}"

    # memory

    def _memory_owner(self, scope, key):
        if scope is MemoryScope.USER:
            return self.users.get(normalize_handle(key))
        return self.chats.get(key)

    async def get_all_memory(self, scope, key):
        self._check()
        owner = self._memory_owner(scope, key)
        return dict(owner.memory) if owner else {}

    async def set_memory_value(self, scope, key, field_id, entry: MemoryEntry):
        self._check()
        owner = self._memory_owner(scope, key)
        if owner is None:
            return False
        owner.memory[field_id] = entry
        return True


class FakeReasoning:
    """Scripted reasoning service: returns queued responses in order."""

    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def _next(self):
        if not self.responses:
            raise ReasoningServiceError("No scripted response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def complete(self, system, messages, **kwargs):
        self.calls.append({"system": system, "messages": messages, **kwargs})
        response = self._next()
        return json.dumps(response) if isinstance(response, dict) else response

    async def complete_json(self, system, messages, **kwargs):
        self.calls.append({"system": system, "messages": messages, "json_mode": True, **kwargs})
        response = self._next()
        return response if isinstance(response, dict) else json.loads(response)

    async def close(self):
        pass


class FakeGateway:
    def __init__(self, fail_on: set[str] | None = None):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_on = fail_on or set()

    async def send_individual(self, text, recipient):
        if text in self.fail_on:
            raise RuntimeError("gateway down")
        self.sent.append(("individual", text, recipient))

    async def send_group(self, text, thread_id):
        if text in self.fail_on:
            raise RuntimeError("gateway down")
        self.sent.append(("group", text, thread_id))

    async def close(self):
        pass


def make_message(content: str, sender: str = "+15551234567", name: str = "Ana", idx: int = 1):
    return ThreadMessage(
        message_id=f"msg-{idx}",
        content=content,
        sender_number=normalize_handle(sender),
        sender_name=name,
    )


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_reasoning():
    return FakeReasoning()


@pytest.fixture
def fake_gateway():
    return FakeGateway()
