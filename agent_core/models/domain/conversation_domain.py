"""
Conversation domain models.

Rows from the conversation store are converted into these models once,
at the repository boundary, so services never re-parse raw JSON metadata.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_core.models.domain.agent_config_domain import OnboardingField

ONBOARDING_SCHEMA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_handle(value: str | None) -> str:
    """Strip '+' and whitespace from a phone-like handle."""
    if not value:
        return ""
    return "".join(value.replace("+", "").split())


class ThreadType(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"
    BROADCAST = "broadcast"


class MemoryEntry(BaseModel):
    value: str
    updated_at: datetime = Field(default_factory=utc_now)
    previous_value: str | None = None

    def to_json(self) -> dict[str, Any]:
        data = {"value": self.value, "updated_at": self.updated_at.isoformat()}
        if self.previous_value is not None:
            data["previous_value"] = self.previous_value
        return data


class OnboardingState(BaseModel):
    """Progress of an onboarding dialog, embedded in user or chat metadata."""

    model_config = ConfigDict(extra="allow")

    schema_version: int = ONBOARDING_SCHEMA_VERSION
    in_progress: bool = False
    completed: bool = False
    fields_pending: list[str] = Field(default_factory=list)
    fields_collected: dict[str, str] = Field(default_factory=dict)
    field_definitions: dict[str, OnboardingField] = Field(default_factory=dict)
    started_at: datetime | None = None
    completion_time: datetime | None = None

    @property
    def active(self) -> bool:
        return self.in_progress and not self.completed

    @classmethod
    def begin(cls, fields: list[OnboardingField]) -> "OnboardingState":
        return cls(
            in_progress=True,
            completed=False,
            fields_pending=[field.id for field in fields],
            fields_collected={},
            field_definitions={field.id: field for field in fields},
            started_at=utc_now(),
        )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class UserMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    onboarding: OnboardingState | None = None
    # Older records only carry this flag
    onboarding_complete: bool | None = None

    def onboarding_completed(self) -> bool:
        if self.onboarding is not None and self.onboarding.completed:
            return True
        return self.onboarding_complete is True


class ChatMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    onboarding: OnboardingState | None = None
    group_info: dict[str, Any] = Field(default_factory=dict)


class ConversationUser(BaseModel):
    id: str
    phone_number: str
    name: str | None = None
    service: str | None = None
    metadata: UserMetadata = Field(default_factory=UserMetadata)
    memory: dict[str, MemoryEntry] = Field(default_factory=dict)
    created_at: datetime | None = None


class Chat(BaseModel):
    id: str
    external_id: str
    type: ThreadType = ThreadType.INDIVIDUAL
    name: str | None = None
    service: str | None = None
    metadata: ChatMetadata = Field(default_factory=ChatMetadata)
    memory: dict[str, MemoryEntry] = Field(default_factory=dict)
    created_at: datetime | None = None


class Project(BaseModel):
    id: str
    chat_id: str
    name: str
    description: str | None = None
    is_live: bool = True
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class ThreadMessage(BaseModel):
    """A message as seen in a thread's recent context window."""

    message_id: str
    content: str = ""
    message_type: str = "text"
    message_content: dict[str, Any] = Field(default_factory=dict)
    sender_number: str = ""
    sender_name: str | None = None
    timestamp: str | None = None

    def is_from(self, handle: str) -> bool:
        return bool(handle) and normalize_handle(self.sender_number) == normalize_handle(handle)


@dataclass(slots=True)
class PersistResult:
    """Outcome of persisting an inbound message."""

    chat_id: str | None
    is_new_chat: bool = False


@dataclass(slots=True)
class Participant:
    user_id: str
    name: str | None
    phone_number: str
    metadata: dict[str, Any]
