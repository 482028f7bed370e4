"""Shared test helpers."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from canopy.models import Conversation, Message
from canopy.providers.base import AbortSignal, ChatProvider, ModelInfo
from canopy.trees.service import TreeService


def content_chunk(text: str, **extra: Any) -> dict[str, Any]:
    """A stream chunk carrying a content delta."""
    return {"choices": [{"delta": {"content": text}}], **extra}


def reasoning_chunk(text: str, field: str = "reasoning_content") -> dict[str, Any]:
    """A stream chunk carrying a reasoning delta under the given field name."""
    return {"choices": [{"delta": {field: text}}]}


class ScriptedProvider(ChatProvider):
    """Replays a fixed list of chunks.

    hold=True keeps the stream open after the last chunk until the abort
    signal fires, like a server that is still generating. fail_with is
    raised after the last chunk.
    """

    def __init__(
        self,
        chunks: list[dict[str, Any]],
        *,
        name: str = "fake",
        hold: bool = False,
        fail_with: Exception | None = None,
    ) -> None:
        self._chunks = chunks
        self._name = name
        self._hold = hold
        self._fail_with = fail_with
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    async def get_models(self) -> list[ModelInfo]:
        return [ModelInfo(id="fake-model", name="Fake Model")]

    async def post_chat_completions(
        self,
        model: str | None,
        messages: list[dict[str, Any]],
        abort_signal: AbortSignal,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append({"model": model, "messages": messages, "options": options})
        for chunk in self._chunks:
            abort_signal.raise_if_aborted()
            yield chunk
            await asyncio.sleep(0)
        if self._fail_with is not None:
            raise self._fail_with
        if self._hold:
            while not abort_signal.aborted:
                await asyncio.sleep(0.001)
            abort_signal.raise_if_aborted()


async def append_text(
    service: TreeService,
    conv_id: str,
    parent_id: int,
    content: str,
    role: str = "user",
) -> Message:
    """Append a text message under parent_id and return it as stored."""
    msg_id = service.ids.next_id()
    await service.append_message(
        Message(
            id=msg_id,
            conv_id=conv_id,
            timestamp=msg_id,
            role=role,
            content=content,
            parent=parent_id,
        ),
        parent_id,
    )
    return await service.get_message(conv_id, msg_id)


async def seed_conversation(
    service: TreeService, name: str = "Test",
) -> tuple[Conversation, Message, Message, Message]:
    """Conversation with root R -> user U1 -> assistant A1. Returns (conv, R, U1, A1)."""
    conv = await service.create_conversation(name)
    root = await service.get_message(conv.id, conv.curr_node)
    u1 = await append_text(service, conv.id, root.id, "Hi", role="user")
    a1 = await append_text(service, conv.id, u1.id, "Hello!", role="assistant")
    conv = await service.get_conversation(conv.id)
    root = await service.get_message(conv.id, root.id)
    u1 = await service.get_message(conv.id, u1.id)
    return conv, root, u1, a1


def message_by_id(messages: list[Message]) -> dict[int, Message]:
    return {m.id: m for m in messages}


async def assert_tree_invariants(service: TreeService, conv_id: str) -> None:
    """Parent/child links agree, exactly one root, every child has one parent, the tip exists."""
    conv = await service.get_conversation(conv_id)
    assert conv is not None
    messages = await service.get_messages(conv_id)
    by_id = message_by_id(messages)
    assert len(by_id) == len(messages)
    roots = [m for m in messages if m.type == "root"]
    assert len(roots) == 1
    assert roots[0].parent == -1
    assert conv.curr_node in by_id

    parent_of: dict[int, int] = {}
    for m in messages:
        assert m.conv_id == conv_id
        assert m.content is not None
        assert len(set(m.children)) == len(m.children)
        for child in m.children:
            assert child in by_id
            assert child not in parent_of, f"{child} listed under {parent_of.get(child)} and {m.id}"
            parent_of[child] = m.id
            assert by_id[child].parent == m.id
        if m.type != "root":
            assert m.id in by_id[m.parent].children
    assert set(parent_of) == set(by_id) - {roots[0].id}
