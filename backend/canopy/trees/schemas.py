"""Request and response schemas for conversation and message endpoints."""

from typing import Any

from pydantic import BaseModel

from canopy.models import Conversation, Message, MessageExtra, Role

# -- Requests --


class CreateConversationRequest(BaseModel):
    name: str = ""


class PatchConversationRequest(BaseModel):
    name: str


class AppendMessageRequest(BaseModel):
    """Append a finished message under parent_id (default: the conversation tip)."""

    content: str
    role: Role = "user"
    parent_id: int | None = None
    model: str | None = None
    extra: list[MessageExtra] | None = None


class SetCurrentNodeRequest(BaseModel):
    msg_id: int


class SavePresetRequest(BaseModel):
    config: dict[str, Any]


# -- Responses --


class ConversationDetailResponse(BaseModel):
    conversation: Conversation
    messages: list[Message]
