"""Canonical data structures for Canopy.

Defined once here, referenced everywhere else. Field aliases carry the
camelCase names used by the snapshot format (convId, lastModified, currNode);
Python code uses the snake_case attribute names.

Branching: every conversation is a tree of messages anchored at a hidden
root node. Editing an old message appends a new sibling under the same
parent, so the old branch stays reachable:

    root
     ├── message 1
     │      ├── message 2
     │      │      └── message 3
     │      └── message 6   (edit of message 2)
     └── message 4
            └── message 5

Only the leaf id is needed to reconstruct a branch (see trees.paths).
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]

ROOT_PARENT_ID = -1

# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MessageExtraTextFile(_Wire):
    type: Literal["textFile"] = "textFile"
    name: str
    content: str


class MessageExtraImageFile(_Wire):
    type: Literal["imageFile"] = "imageFile"
    name: str
    base64_url: str = Field(alias="base64Url")


class MessageExtraAudioFile(_Wire):
    type: Literal["audioFile"] = "audioFile"
    name: str
    base64_data: str = Field(alias="base64Data")
    mime_type: str = Field(alias="mimeType")


class MessageExtraContext(_Wire):
    type: Literal["context"] = "context"
    name: str
    content: str


MessageExtra = Annotated[
    MessageExtraTextFile | MessageExtraImageFile | MessageExtraAudioFile | MessageExtraContext,
    Field(discriminator="type"),
]

# ---------------------------------------------------------------------------
# Tree records
# ---------------------------------------------------------------------------


class TimingReport(BaseModel):
    prompt_n: int | None = None
    prompt_ms: float | None = None
    predicted_n: int | None = None
    predicted_ms: float | None = None


class Message(_Wire):
    """A node in a conversation tree. Ids are epoch-ms and globally unique."""

    id: int
    conv_id: str = Field(alias="convId")
    type: Literal["root", "text"] = "text"
    timestamp: int
    model: str | None = None
    role: Role
    content: str | None  # None: not generated yet; never persisted
    reasoning_content: str | None = None
    timings: TimingReport | None = None
    extra: list[MessageExtra] | None = None
    parent: int = ROOT_PARENT_ID
    children: list[int] = Field(default_factory=list)


class Conversation(_Wire):
    id: str  # format: conv-{timestamp}
    last_modified: int = Field(alias="lastModified")
    curr_node: int = Field(alias="currNode")  # tip the conversation resumes from
    name: str = ""


class ConfigurationPreset(_Wire):
    id: str  # format: config-{timestamp}
    name: str
    created_at: int = Field(alias="createdAt")
    config: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# In-flight generation
# ---------------------------------------------------------------------------


class Pending(BaseModel):
    """No content received yet. A message in this state is never persisted."""

    state: Literal["pending"] = "pending"


class Committed(BaseModel):
    """Content has been received and may be persisted."""

    state: Literal["committed"] = "committed"
    text: str


MessageBody = Annotated[Pending | Committed, Field(discriminator="state")]


class PendingMessage(_Wire):
    """An assistant turn being assembled from a stream. Lives only in memory."""

    id: int
    conv_id: str = Field(alias="convId")
    type: Literal["text"] = "text"
    timestamp: int
    model: str | None = None
    role: Role = "assistant"
    body: MessageBody = Field(default_factory=Pending)
    reasoning_content: str | None = None
    timings: TimingReport | None = None
    extra: list[MessageExtra] | None = None
    parent: int
    children: list[int] = Field(default_factory=list)

    @property
    def content(self) -> str | None:
        if isinstance(self.body, Committed):
            return self.body.text
        return None

    @property
    def is_pending(self) -> bool:
        return isinstance(self.body, Pending)

    def append_content(self, delta: str) -> None:
        self.body = Committed(text=(self.content or "") + delta)

    def append_reasoning(self, delta: str) -> None:
        self.reasoning_content = (self.reasoning_content or "") + delta

    def to_message(self) -> Message | None:
        """The committable message, or None while still pending."""
        if self.is_pending:
            return None
        return Message(
            id=self.id,
            conv_id=self.conv_id,
            type=self.type,
            timestamp=self.timestamp,
            model=self.model,
            role=self.role,
            content=self.content,
            reasoning_content=self.reasoning_content,
            timings=self.timings,
            extra=self.extra,
            parent=self.parent,
            children=list(self.children),
        )


class MessageDisplay(_Wire):
    """A path message plus the leaf ids of its siblings, for cycling between branches."""

    msg: Message | PendingMessage
    sibling_leaf_node_ids: list[int] = Field(alias="siblingLeafNodeIds")
    sibling_curr_idx: int = Field(alias="siblingCurrIdx")
    is_pending: bool = Field(default=False, alias="isPending")


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class SnapshotTable(BaseModel):
    """One entry of an export snapshot: every row of one table."""

    table: str
    rows: list[dict[str, Any]] = Field(default_factory=list)
