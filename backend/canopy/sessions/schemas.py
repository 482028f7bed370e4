"""Request and response schemas for chat session endpoints."""

from pydantic import BaseModel

from canopy.models import MessageExtra


class SendMessageRequest(BaseModel):
    """content None regenerates a reply for leaf_id without a new user turn."""

    content: str | None
    leaf_id: int | None = None
    extra: list[MessageExtra] | None = None
    stream: bool = False


class ReplaceMessageRequest(BaseModel):
    content: str | None


class RegenerateRequest(BaseModel):
    """Edit-and-regenerate when content is set, plain regenerate otherwise."""

    content: str | None = None
    extra: list[MessageExtra] | None = None
    stream: bool = False


class SendResponse(BaseModel):
    sent: bool
    curr_node: int | None = None


class ReplaceResponse(BaseModel):
    replaced: bool
    curr_node: int | None = None


class StopResponse(BaseModel):
    stopped: bool
