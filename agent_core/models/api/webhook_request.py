# agent_core/models/api/webhook_request.py
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class MessageContent(BaseModel):
    """Typed body of an inbound message; every field is optional."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    text: str | None = None
    data: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None
    quoted_message_content: str | None = None
    quoted_message_sender: str | None = None
    reaction: str | None = None
    group_name: str | None = Field(default=None, alias="groupName")
    invite_code: str | None = Field(default=None, alias="inviteCode")
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def plain_text(self) -> str:
        """Text used as the message's raw content."""
        if self.text:
            return self.text
        for value in self.to_json().values():
            if isinstance(value, str) and value:
                return value
        return ""


class WebhookPayload(BaseModel):
    """Inbound message as delivered by the messaging gateway."""

    model_config = ConfigDict(extra="ignore")

    thread_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    message_content: MessageContent = Field(default_factory=MessageContent)
    message_type: str = "text"
    sender_number: str = ""
    sender_name: str = ""
    thread_type: Literal["individual", "group", "broadcast"] = "individual"
    timestamp: str | None = None
    service: str = "whatsapp"
    a1_account_id: str | None = None
    is_from_agent: bool = False

    @property
    def content(self) -> str:
        return self.message_content.plain_text()


class WebhookResponse(BaseModel):
    success: bool
    message: str
