"""Tests for GenerationService: streaming, abort, errors and commit."""

import logging

import pytest

from canopy.config import GenerationConfig
from canopy.generation.service import GenerationService
from canopy.models import PendingMessage
from canopy.providers.base import ProviderError
from canopy.trees.service import ConversationNotFoundError, MessageNotFoundError
from tests.fixtures import (
    ScriptedProvider,
    content_chunk,
    message_by_id,
    reasoning_chunk,
    seed_conversation,
)


def _service(tree_service, slots, provider, **config) -> GenerationService:
    return GenerationService(
        tree_service, slots, config=GenerationConfig(provider="fake", **config), provider=provider,
    )


class TestGenerate:
    async def test_commits_streamed_reply(self, tree_service, generation_service):
        conv, root, u1, a1 = await seed_conversation(tree_service)
        committed = await generation_service.generate(conv.id, a1.id)

        assert committed is not None
        assert committed.content == "Hello world"
        assert committed.role == "assistant"
        assert committed.parent == a1.id
        stored = await tree_service.get_message(conv.id, committed.id)
        assert stored.content == "Hello world"
        updated = await tree_service.get_conversation(conv.id)
        assert updated.curr_node == committed.id
        parent = await tree_service.get_message(conv.id, a1.id)
        assert parent.children == [committed.id]

    async def test_sends_leaf_path_as_context(self, tree_service, slots):
        provider = ScriptedProvider([content_chunk("ok")])
        service = _service(
            tree_service, slots, provider,
            model="m-1", system_prompt="Be kind.", options={"temperature": 0.5},
        )
        conv, root, u1, a1 = await seed_conversation(tree_service)
        await service.generate(conv.id, a1.id)

        [call] = provider.calls
        assert call["model"] == "m-1"
        assert call["options"] == {"temperature": 0.5}
        assert call["messages"] == [
            {"role": "system", "content": "Be kind."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
        ]

    async def test_on_chunk_sees_growing_content(self, tree_service, generation_service):
        conv, root, u1, a1 = await seed_conversation(tree_service)
        seen: list[str | None] = []
        await generation_service.generate(conv.id, a1.id, on_chunk=lambda p: seen.append(p.content))
        assert seen == ["Hello", "Hello world"]

    async def test_pending_published_then_cleared(self, tree_service, generation_service, db):
        conv, root, u1, a1 = await seed_conversation(tree_service)
        events: list[tuple[str, str | None, bool]] = []

        def record(conv_id: str, pending: PendingMessage | None) -> None:
            if pending is None:
                events.append((conv_id, None, False))
            else:
                events.append((conv_id, pending.content, pending.is_pending))

        db.bus.on_pending_changed(record)
        await generation_service.generate(conv.id, a1.id)
        assert events == [
            (conv.id, None, True),
            (conv.id, "Hello", False),
            (conv.id, "Hello world", False),
            (conv.id, None, False),
        ]

    async def test_slot_released_after_completion(self, tree_service, generation_service, slots):
        conv, root, u1, a1 = await seed_conversation(tree_service)
        await generation_service.generate(conv.id, a1.id)
        assert not slots.is_generating(conv.id)
        assert slots.pending(conv.id) is None

    async def test_busy_conversation_is_ignored(self, tree_service, generation_service, slots, provider):
        conv, root, u1, a1 = await seed_conversation(tree_service)
        held = slots.claim(conv.id)
        assert await generation_service.generate(conv.id, a1.id) is None
        assert provider.calls == []
        assert slots.is_generating(conv.id)
        slots.release(held)

    async def test_reasoning_and_model_are_recorded(self, tree_service, slots):
        provider = ScriptedProvider([
            {"model": "llama-3", "choices": [{"delta": {}}]},
            reasoning_chunk("Let me ", "reasoning_content"),
            reasoning_chunk("think.", "reasoning"),
            content_chunk("42"),
        ])
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        committed = await service.generate(conv.id, a1.id)
        assert committed.model == "llama-3"
        assert committed.reasoning_content == "Let me think."
        assert committed.content == "42"

    async def test_only_known_timing_fields_kept(self, tree_service, slots):
        provider = ScriptedProvider([
            content_chunk("x", timings={
                "prompt_n": 12, "predicted_n": 3, "predicted_ms": 40.5, "cache_n": 7,
            }),
        ])
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        committed = await service.generate(conv.id, a1.id)
        stored = await tree_service.get_message(conv.id, committed.id)
        assert stored.timings.model_dump(exclude_none=True) == {
            "prompt_n": 12, "predicted_n": 3, "predicted_ms": 40.5,
        }

    async def test_malformed_chunks_are_skipped(self, tree_service, slots, caplog):
        provider = ScriptedProvider([{"choices": []}, {"unexpected": True}, content_chunk("ok")])
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        with caplog.at_level(logging.WARNING, logger="canopy.generation.service"):
            committed = await service.generate(conv.id, a1.id)
        assert committed.content == "ok"
        assert caplog.text.count("Invalid chunk format") == 2

    async def test_malformed_deltas_are_skipped(self, tree_service, slots, caplog):
        provider = ScriptedProvider([
            {"choices": [{"delta": "oops"}]},
            {"choices": [{"delta": {"content": 5}}]},
            {"choices": [{"delta": {"reasoning": ["x"]}}]},
            {**content_chunk("ok"), "model": 42},
        ])
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        with caplog.at_level(logging.WARNING, logger="canopy.generation.service"):
            committed = await service.generate(conv.id, a1.id)
        assert committed.content == "ok"
        assert committed.reasoning_content is None
        assert committed.model is None
        assert caplog.text.count("Invalid chunk delta") == 3

    async def test_skipped_delta_leaves_pending_untouched(self):
        pending = PendingMessage(id=1, conv_id="conv-1", timestamp=1, parent=0)
        assert GenerationService.merge_chunk(pending, content_chunk("a"))
        assert not GenerationService.merge_chunk(
            pending, {"choices": [{"delta": {"content": "b", "reasoning_content": 3}}]},
        )
        assert pending.to_message().content == "a"

    async def test_empty_stream_commits_nothing(self, tree_service, slots):
        service = _service(tree_service, slots, ScriptedProvider([]))
        conv, root, u1, a1 = await seed_conversation(tree_service)
        assert await service.generate(conv.id, a1.id) is None
        assert len(await tree_service.get_messages(conv.id)) == 3


class TestAbort:
    async def test_abort_commits_partial_content(self, tree_service, slots):
        provider = ScriptedProvider([content_chunk("Hel"), content_chunk("lo")], hold=True)
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)

        committed = await service.generate(
            conv.id, a1.id, on_chunk=lambda p: slots.abort(conv.id),
        )
        assert committed is not None
        assert committed.content == "Hel"
        messages = message_by_id(await tree_service.get_messages(conv.id))
        assert messages[committed.id].content == "Hel"
        assert messages[a1.id].children == [committed.id]
        assert not slots.is_generating(conv.id)

    async def test_abort_after_full_stream_keeps_everything(self, tree_service, slots):
        provider = ScriptedProvider([content_chunk("a"), content_chunk("b")], hold=True)
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)

        def stop_at_end(pending: PendingMessage) -> None:
            if pending.content == "ab":
                slots.abort(conv.id)

        committed = await service.generate(conv.id, a1.id, on_chunk=stop_at_end)
        assert committed.content == "ab"

    async def test_abort_before_content_commits_nothing(self, tree_service, slots):
        provider = ScriptedProvider([{"model": "m", "choices": [{"delta": {}}]}], hold=True)
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)

        result = await service.generate(conv.id, a1.id, on_chunk=lambda p: slots.abort(conv.id))
        assert result is None
        assert len(await tree_service.get_messages(conv.id)) == 3
        updated = await tree_service.get_conversation(conv.id)
        assert updated.curr_node == a1.id


class TestErrors:
    async def test_error_chunk_discards_pending(self, tree_service, slots, db):
        provider = ScriptedProvider([content_chunk("partial"), {"error": {"message": "boom"}}])
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        cleared: list[str] = []
        db.bus.on_pending_changed(lambda cid, p: cleared.append(cid) if p is None else None)

        with pytest.raises(ProviderError, match="boom"):
            await service.generate(conv.id, a1.id)

        assert len(await tree_service.get_messages(conv.id)) == 3
        assert not slots.is_generating(conv.id)
        assert cleared == [conv.id]

    async def test_string_error_field(self, tree_service, slots):
        service = _service(tree_service, slots, ScriptedProvider([{"error": "overloaded"}]))
        conv, root, u1, a1 = await seed_conversation(tree_service)
        with pytest.raises(ProviderError, match="overloaded"):
            await service.generate(conv.id, a1.id)

    async def test_transport_failure_propagates(self, tree_service, slots, caplog):
        provider = ScriptedProvider([content_chunk("x")], fail_with=ProviderError("connection reset"))
        service = _service(tree_service, slots, provider)
        conv, root, u1, a1 = await seed_conversation(tree_service)
        with pytest.raises(ProviderError):
            await service.generate(conv.id, a1.id)
        assert "Error during message generation" in caplog.text
        assert len(await tree_service.get_messages(conv.id)) == 3

    async def test_unknown_conversation(self, generation_service, slots):
        with pytest.raises(ConversationNotFoundError):
            await generation_service.generate("conv-missing", 1)
        assert not slots.is_generating("conv-missing")

    async def test_unknown_leaf(self, tree_service, generation_service, provider):
        conv, *_ = await seed_conversation(tree_service)
        with pytest.raises(MessageNotFoundError):
            await generation_service.generate(conv.id, 12345)
        assert provider.calls == []
