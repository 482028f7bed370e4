"""Session controller: the user-facing chat actions on top of the tree and generation services.

Every entry point refuses (returns a falsy result) while a generation owns
the target conversation. Actions that start a generation claim the
conversation's slot before their first await, so two near-simultaneous
calls cannot both get through.
"""

import logging

from canopy.generation.service import ChunkCallback, GenerationService
from canopy.generation.slots import GenerationSlots
from canopy.models import Conversation, Message, MessageExtra, PendingMessage, Role
from canopy.trees.service import TreeService

logger = logging.getLogger(__name__)


class SessionController:
    """Send, stop, edit, regenerate and branch."""

    def __init__(self, tree_service: TreeService, generation_service: GenerationService) -> None:
        self._tree_service = tree_service
        self._generation = generation_service

    @property
    def slots(self) -> GenerationSlots:
        return self._generation.slots

    def is_generating(self, conv_id: str) -> bool:
        return self.slots.is_generating(conv_id)

    def pending_message(self, conv_id: str) -> PendingMessage | None:
        return self.slots.pending(conv_id)

    async def send_message(
        self,
        conv_id: str,
        leaf_id: int,
        content: str | None,
        extra: list[MessageExtra] | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> bool:
        """Commit a user turn under leaf_id, then generate a reply to it.

        With content None no user turn is written and the reply is generated
        for leaf_id itself. Returns False if a generation is already running.
        Errors from the user-turn commit are raised and no generation starts.
        """
        slot = self.slots.claim(conv_id)
        if slot is None:
            return False

        if content is not None:
            try:
                leaf_id = await self._commit_turn(conv_id, "user", content, extra, leaf_id)
            except BaseException:
                self.slots.release(slot)
                raise

        await self._generation.generate(conv_id, leaf_id, slot=slot, on_chunk=on_chunk)
        return True

    def stop_generating(self, conv_id: str) -> bool:
        """Abort the running generation. Content streamed so far is still committed."""
        return self.slots.abort(conv_id)

    async def replace_message(
        self, conv_id: str, msg: Message, content: str | None,
    ) -> int | None:
        """Store an edited copy of msg as its new sibling and return the new id.

        The original stays reachable as the other branch. With content None
        nothing is written and the conversation tip moves to msg's parent.
        """
        if self.is_generating(conv_id):
            return None
        if content is None:
            await self._tree_service.set_current_node(conv_id, msg.parent)
            return msg.parent
        return await self._commit_edit(msg, content, msg.extra)

    async def replace_message_and_generate(
        self,
        conv_id: str,
        msg: Message,
        content: str | None,
        extra: list[MessageExtra] | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> bool:
        """Edit msg into a new sibling and generate a reply to it.

        With content None this regenerates msg: a new reply is generated for
        msg's parent, leaving msg in place as a sibling.
        """
        slot = self.slots.claim(conv_id)
        if slot is None:
            return False

        leaf_id = msg.parent
        if content is not None:
            try:
                leaf_id = await self._commit_edit(msg, content, extra)
            except BaseException:
                self.slots.release(slot)
                raise

        await self._generation.generate(conv_id, leaf_id, slot=slot, on_chunk=on_chunk)
        return True

    async def branch_message(self, msg: Message) -> Conversation | None:
        """Copy the branch ending at msg into a new conversation."""
        if self.is_generating(msg.conv_id):
            return None
        return await self._tree_service.branch_conversation(msg.conv_id, msg.id)

    async def _commit_turn(
        self,
        conv_id: str,
        role: Role,
        content: str,
        extra: list[MessageExtra] | None,
        parent_id: int,
    ) -> int:
        msg_id = self._tree_service.ids.next_id()
        await self._tree_service.append_message(
            Message(
                id=msg_id,
                conv_id=conv_id,
                type="text",
                timestamp=msg_id,
                role=role,
                content=content,
                extra=extra,
                parent=parent_id,
            ),
            parent_id,
        )
        logger.debug("Committed %s turn %d in %s", role, msg_id, conv_id)
        return msg_id

    async def _commit_edit(
        self, msg: Message, content: str, extra: list[MessageExtra] | None,
    ) -> int:
        """Store a copy of msg with new content as its newest sibling.

        Everything else (model, reasoning, timings) is carried over.
        """
        msg_id = self._tree_service.ids.next_id()
        await self._tree_service.append_message(
            msg.model_copy(update={
                "id": msg_id,
                "timestamp": msg_id,
                "content": content,
                "extra": extra,
                "children": [],
            }),
            msg.parent,
        )
        logger.debug("Committed edit of %d as %d in %s", msg.id, msg_id, msg.conv_id)
        return msg_id
