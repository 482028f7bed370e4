"""Generation service: turns a provider's chunk stream into one committed message.

Per conversation: Idle -> Generating -> {Committed, Cancelled, Failed} -> Idle.
The in-flight reply lives in memory as a PendingMessage, published on the
change bus after every chunk, and is written through TreeService only once
it has content. Stopping a generation keeps what was streamed so far.
"""

import logging
from collections.abc import Callable
from contextlib import aclosing
from typing import Any

from pydantic import ValidationError

from canopy.config import GenerationConfig
from canopy.generation.context import ContextBuilder
from canopy.generation.slots import GenerationSlot, GenerationSlots
from canopy.models import Message, PendingMessage, TimingReport
from canopy.providers.base import AbortError, ChatProvider, ProviderError
from canopy.providers.registry import get_provider
from canopy.trees.paths import filter_to_leaf_path
from canopy.trees.service import ConversationNotFoundError, MessageNotFoundError, TreeService

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[PendingMessage], Any]

_TIMING_FIELDS = ("prompt_n", "prompt_ms", "predicted_n", "predicted_ms")


def _is_text(value: Any) -> bool:
    return value is None or isinstance(value, str)


class GenerationService:
    """Streams an assistant reply for a conversation branch and commits it."""

    def __init__(
        self,
        tree_service: TreeService,
        slots: GenerationSlots | None = None,
        *,
        config: GenerationConfig | None = None,
        provider: ChatProvider | None = None,
    ) -> None:
        self._tree_service = tree_service
        self._slots = slots or GenerationSlots()
        self._config = config or GenerationConfig()
        self._provider = provider
        self._context_builder = ContextBuilder()

    @property
    def slots(self) -> GenerationSlots:
        return self._slots

    @property
    def config(self) -> GenerationConfig:
        return self._config

    def resolve_provider(self) -> ChatProvider:
        if self._provider is not None:
            return self._provider
        return get_provider(self._config.provider)

    async def generate(
        self,
        conv_id: str,
        leaf_id: int,
        *,
        slot: GenerationSlot | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Message | None:
        """Generate a reply to the branch ending at leaf_id.

        Returns the committed message, or None when nothing was committed:
        another generation owns the conversation, or the stream (or an abort)
        ended before any content arrived. A slot claimed by the caller is
        taken over and released here on every path.
        """
        if slot is None:
            slot = self._slots.claim(conv_id)
            if slot is None:
                logger.debug("Generation already running for %s; ignoring", conv_id)
                return None

        try:
            return await self._run(conv_id, leaf_id, slot, on_chunk)
        finally:
            slot.pending = None
            self._slots.release(slot)
            self._tree_service.db.bus.publish_pending(conv_id, None)

    async def _run(
        self,
        conv_id: str,
        leaf_id: int,
        slot: GenerationSlot,
        on_chunk: ChunkCallback | None,
    ) -> Message | None:
        if await self._tree_service.get_conversation(conv_id) is None:
            raise ConversationNotFoundError(conv_id)
        messages = await self._tree_service.get_messages(conv_id)
        if not any(m.id == leaf_id for m in messages):
            raise MessageNotFoundError(leaf_id, conv_id)

        path = filter_to_leaf_path(messages, leaf_id, include_root=False)
        api_messages = self._context_builder.build(
            path,
            self._config.system_prompt,
            exclude_thought=self._config.exclude_thought,
        )
        provider = self.resolve_provider()

        pending_id = self._tree_service.ids.next_id()
        pending = PendingMessage(
            id=pending_id,
            conv_id=conv_id,
            timestamp=pending_id,
            parent=leaf_id,
        )
        self._publish(slot, pending)

        signal = slot.abort_controller.signal
        try:
            stream = provider.post_chat_completions(
                self._config.model, api_messages, signal, self._config.options,
            )
            async with aclosing(stream):
                async for chunk in stream:
                    if signal.aborted:
                        raise AbortError(signal.reason or "Generation aborted")
                    if not self.merge_chunk(pending, chunk):
                        continue
                    self._publish(slot, pending)
                    if on_chunk is not None:
                        on_chunk(pending)
        except AbortError:
            logger.debug("Generation aborted by user for %s", conv_id)
        except Exception:
            logger.exception("Error during message generation for %s", conv_id)
            raise

        committed = pending.to_message()
        if committed is None:
            logger.debug("Generation for %s produced no content; nothing committed", conv_id)
            return None
        await self._tree_service.append_message(committed, leaf_id)
        return committed

    @staticmethod
    def merge_chunk(pending: PendingMessage, chunk: dict[str, Any]) -> bool:
        """Fold one stream chunk into pending. Returns False if the chunk was skipped.

        Raises ProviderError when the chunk carries an error.
        """
        error = chunk.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError(message or "Unknown error")

        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            logger.warning("Invalid chunk format received: %r", chunk)
            return False

        delta = choices[0].get("delta") or {}
        if not isinstance(delta, dict):
            logger.warning("Invalid chunk delta received: %r", chunk)
            return False
        content = delta.get("content")
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if not _is_text(content) or not _is_text(reasoning):
            logger.warning("Invalid chunk delta received: %r", chunk)
            return False

        if content:
            pending.append_content(content)
        if reasoning:
            pending.append_reasoning(reasoning)

        model = chunk.get("model")
        if isinstance(model, str) and model:
            pending.model = model

        timings = chunk.get("timings")
        if isinstance(timings, dict):
            # Only the counters worth keeping; any subset may be missing
            try:
                pending.timings = TimingReport.model_validate(
                    {k: timings[k] for k in _TIMING_FIELDS if k in timings}
                )
            except ValidationError:
                logger.warning("Ignoring malformed timings in chunk: %r", timings)
        return True

    def _publish(self, slot: GenerationSlot, pending: PendingMessage) -> None:
        slot.pending = pending
        self._tree_service.db.bus.publish_pending(slot.conv_id, pending)
