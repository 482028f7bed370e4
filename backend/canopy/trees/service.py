"""Tree service: conversation and message CRUD on top of Database transactions.

Every mutation runs inside one Database.transaction() and touches the
conversation it changes, so subscribers are notified exactly once per
successful write and never for a rolled-back one.
"""

import json
import logging
from collections import deque
from collections.abc import Sequence
from typing import Any

from canopy.db.connection import Database, Transaction
from canopy.models import (
    ROOT_PARENT_ID,
    ConfigurationPreset,
    Conversation,
    Message,
    MessageDisplay,
    PendingMessage,
)
from canopy.trees.paths import build_message_displays, filter_to_leaf_path
from canopy.utils.ids import IdAllocator, default_allocator, now_ms
from canopy.utils.json import dump_json_or_none, parse_json_field, parse_json_or_none

logger = logging.getLogger(__name__)

_INSERT_MESSAGE_SQL = """
    INSERT INTO messages
        (id, conv_id, type, timestamp, model, role, content,
         reasoning_content, timings, extra, parent, children)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class TreeService:
    """Conversation trees: create, append, branch, delete, and leaf-path resolution."""

    filter_to_leaf_path = staticmethod(filter_to_leaf_path)

    def __init__(
        self,
        db: Database,
        *,
        ids: IdAllocator | None = None,
        migrator: Any | None = None,
    ) -> None:
        self._db = db
        self._ids = ids or default_allocator
        self._migrator = migrator

    @property
    def db(self) -> Database:
        return self._db

    @property
    def ids(self) -> IdAllocator:
        return self._ids

    async def seed_ids(self) -> int:
        """Move the id allocator past every id already stored.

        Stored ids can be ahead of the wall clock (branch blocks, imports),
        so a fresh process must not start from the clock alone. Returns the
        highest stored id, or 0 for an empty store.
        """
        msg_row = await self._db.fetchone("SELECT MAX(id) AS max_id FROM messages")
        conv_row = await self._db.fetchone(
            "SELECT MAX(CAST(SUBSTR(id, 6) AS INTEGER)) AS max_id FROM conversations"
            " WHERE id GLOB 'conv-[0-9]*'"
        )
        highest = max(msg_row["max_id"] or 0, conv_row["max_id"] or 0)
        self._ids.observe(highest)
        logger.debug("Id allocator seeded past %d", highest)
        return highest

    # -- Conversations --

    async def create_conversation(self, name: str) -> Conversation:
        """Create a conversation and its root node in one transaction."""
        now = self._ids.next_id()
        conv = Conversation(id=f"conv-{now}", last_modified=now, curr_node=now, name=name)

        async with self._db.transaction() as tx:
            existing = await tx.fetchone("SELECT id FROM conversations WHERE id = ?", (conv.id,))
            if existing is not None:
                raise StoreError(f"Conversation id collision: {conv.id}")
            await self._insert_conversation(tx, conv)
            await self._insert_message(tx, Message(
                id=now,
                conv_id=conv.id,
                type="root",
                timestamp=now,
                role="system",
                content="",
                parent=ROOT_PARENT_ID,
                children=[],
            ))
            tx.touch(conv.id)

        return conv

    async def get_all_conversations(self) -> list[Conversation]:
        """All conversations, most recently modified first. Runs the legacy migration once."""
        if self._migrator is not None:
            await self._migrator.migrate()
        rows = await self._db.fetchall(
            "SELECT * FROM conversations ORDER BY last_modified DESC"
        )
        return [self._conversation_from_row(r) for r in rows]

    async def get_conversation(self, conv_id: str) -> Conversation | None:
        row = await self._db.fetchone("SELECT * FROM conversations WHERE id = ?", (conv_id,))
        if row is None:
            return None
        return self._conversation_from_row(row)

    async def get_messages(self, conv_id: str) -> list[Message]:
        """All messages of a conversation, every branch, ordered by timestamp."""
        rows = await self._db.fetchall(
            "SELECT * FROM messages WHERE conv_id = ? ORDER BY timestamp, id",
            (conv_id,),
        )
        return [self._message_from_row(r) for r in rows]

    async def get_message(self, conv_id: str, msg_id: int) -> Message:
        row = await self._db.fetchone(
            "SELECT * FROM messages WHERE conv_id = ? AND id = ?", (conv_id, msg_id)
        )
        if row is None:
            raise MessageNotFoundError(msg_id, conv_id)
        return self._message_from_row(row)

    async def update_conversation_name(self, conv_id: str, name: str) -> Conversation:
        async with self._db.transaction() as tx:
            row = await tx.fetchone("SELECT * FROM conversations WHERE id = ?", (conv_id,))
            if row is None:
                raise ConversationNotFoundError(conv_id)
            await tx.execute(
                "UPDATE conversations SET name = ?, last_modified = ? WHERE id = ?",
                (name, now_ms(), conv_id),
            )
            tx.touch(conv_id)
        conv = await self.get_conversation(conv_id)
        assert conv is not None
        return conv

    async def set_current_node(self, conv_id: str, msg_id: int) -> Conversation:
        """Point the conversation tip at an existing message (branch navigation)."""
        async with self._db.transaction() as tx:
            row = await tx.fetchone("SELECT * FROM conversations WHERE id = ?", (conv_id,))
            if row is None:
                raise ConversationNotFoundError(conv_id)
            msg_row = await tx.fetchone(
                "SELECT id FROM messages WHERE conv_id = ? AND id = ?", (conv_id, msg_id)
            )
            if msg_row is None:
                raise MessageNotFoundError(msg_id, conv_id)
            await tx.execute(
                "UPDATE conversations SET curr_node = ? WHERE id = ?", (msg_id, conv_id)
            )
            tx.touch(conv_id)
        conv = await self.get_conversation(conv_id)
        assert conv is not None
        return conv

    async def delete_conversation(self, conv_id: str) -> None:
        """Remove a conversation and all of its messages."""
        async with self._db.transaction() as tx:
            row = await tx.fetchone("SELECT id FROM conversations WHERE id = ?", (conv_id,))
            if row is None:
                raise ConversationNotFoundError(conv_id)
            await tx.execute("DELETE FROM messages WHERE conv_id = ?", (conv_id,))
            await tx.execute("DELETE FROM conversations WHERE id = ?", (conv_id,))
            tx.touch(conv_id)

    # -- Messages --

    async def append_message(
        self, msg: Message | PendingMessage, parent_id: int,
    ) -> None:
        """Append msg as the newest child of parent_id and make it the conversation tip.

        A message without content (still pending) is ignored, so a caller can
        pass an in-progress draft without writing it twice.
        """
        if isinstance(msg, PendingMessage):
            committed = msg.to_message()
            if committed is None:
                return
            msg = committed
        if msg.content is None:
            return

        conv_id = msg.conv_id
        async with self._db.transaction() as tx:
            conv_row = await tx.fetchone(
                "SELECT id FROM conversations WHERE id = ?", (conv_id,)
            )
            if conv_row is None:
                raise ConversationNotFoundError(conv_id)
            parent_row = await tx.fetchone(
                "SELECT children FROM messages WHERE conv_id = ? AND id = ?",
                (conv_id, parent_id),
            )
            if parent_row is None:
                raise MessageNotFoundError(parent_id, conv_id)

            children = list(parse_json_or_none(parent_row["children"]) or [])
            children.append(msg.id)
            await tx.execute(
                "UPDATE messages SET children = ? WHERE id = ?",
                (json.dumps(children), parent_id),
            )
            await self._insert_message(
                tx, msg.model_copy(update={"parent": parent_id, "children": []})
            )
            await tx.execute(
                "UPDATE conversations SET last_modified = ?, curr_node = ? WHERE id = ?",
                (now_ms(), msg.id, conv_id),
            )
            tx.touch(conv_id)

    async def branch_conversation(self, conv_id: str, fork_msg_id: int) -> Conversation:
        """Copy the root-to-fork path into a new conversation.

        Only the selected branch survives: children that are not on the path
        are dropped. All copied messages get fresh, contiguous ids.
        """
        conv = await self.get_conversation(conv_id)
        if conv is None:
            raise ConversationNotFoundError(conv_id)

        messages = await self.get_messages(conv_id)
        if not any(m.id == fork_msg_id for m in messages):
            raise MessageNotFoundError(fork_msg_id, conv_id)
        path = filter_to_leaf_path(messages, fork_msg_id, include_root=True)

        start = self._ids.next_block(len(path))
        id_map = {m.id: start + i for i, m in enumerate(path)}

        branch = Conversation(
            id=f"conv-{start}",
            last_modified=now_ms(),
            curr_node=id_map[fork_msg_id],
            name=f"{conv.name} - Branched",
        )

        async with self._db.transaction() as tx:
            existing = await tx.fetchone(
                "SELECT id FROM conversations WHERE id = ?", (branch.id,)
            )
            if existing is not None:
                raise StoreError(f"Conversation id collision: {branch.id}")
            await self._insert_conversation(tx, branch)
            for msg in path:
                await self._insert_message(tx, msg.model_copy(update={
                    "id": id_map[msg.id],
                    "conv_id": branch.id,
                    "parent": ROOT_PARENT_ID if msg.parent == ROOT_PARENT_ID else id_map[msg.parent],
                    "children": [id_map[c] for c in msg.children if c in id_map],
                }))
            tx.touch(branch.id)

        return branch

    async def delete_message(self, msg: Message) -> None:
        """Delete msg and its whole subtree, pruning dangling child references.

        If the conversation tip was inside the deleted subtree, the tip moves
        to msg's parent.
        """
        conv_id = msg.conv_id
        async with self._db.transaction() as tx:
            conv_row = await tx.fetchone("SELECT * FROM conversations WHERE id = ?", (conv_id,))
            if conv_row is None:
                raise ConversationNotFoundError(conv_id)
            rows = await tx.fetchall("SELECT * FROM messages WHERE conv_id = ?", (conv_id,))
            cache = {m.id: m for m in (self._message_from_row(r) for r in rows)}
            target = cache.get(msg.id)
            if target is None:
                raise MessageNotFoundError(msg.id, conv_id)
            if target.type == "root":
                raise StoreError("The root message can only be removed with its conversation")

            to_delete: set[int] = set()
            queue: deque[int] = deque([target.id])
            while queue:
                mid = queue.popleft()
                if mid in to_delete:
                    continue
                to_delete.add(mid)
                node = cache.get(mid)
                if node is not None:
                    queue.extend(node.children)

            def is_valid_child(cid: int) -> bool:
                return cid not in to_delete and cid in cache

            updates = [
                (json.dumps([c for c in m.children if is_valid_child(c)]), m.id)
                for m in cache.values()
                if m.id not in to_delete and not all(is_valid_child(c) for c in m.children)
            ]
            if updates:
                await tx.executemany("UPDATE messages SET children = ? WHERE id = ?", updates)

            await tx.executemany(
                "DELETE FROM messages WHERE id = ?", [(mid,) for mid in to_delete]
            )

            curr_node = conv_row["curr_node"]
            if curr_node in to_delete:
                curr_node = target.parent
            await tx.execute(
                "UPDATE conversations SET last_modified = ?, curr_node = ? WHERE id = ?",
                (now_ms(), curr_node, conv_id),
            )
            tx.touch(conv_id)

        logger.debug("Deleted %d message(s) from %s", len(to_delete), conv_id)

    async def get_message_displays(
        self,
        conv_id: str,
        leaf_id: int | None = None,
        pending: PendingMessage | None = None,
    ) -> list[MessageDisplay]:
        """The branch ending at leaf_id (default: the conversation tip) with sibling info."""
        conv = await self.get_conversation(conv_id)
        if conv is None:
            raise ConversationNotFoundError(conv_id)
        messages = await self.get_messages(conv_id)
        return build_message_displays(
            messages, conv.curr_node if leaf_id is None else leaf_id, pending
        )

    # -- Configuration presets --

    async def get_presets(self) -> list[ConfigurationPreset]:
        rows = await self._db.fetchall(
            "SELECT * FROM user_configuration_presets ORDER BY created_at"
        )
        return [self._preset_from_row(r) for r in rows]

    async def save_preset(
        self, name: str, config: dict[str, Any], preset_id: str | None = None,
    ) -> ConfigurationPreset:
        """Save a preset, replacing any existing preset with the same name."""
        now = now_ms()
        preset = ConfigurationPreset(
            id=preset_id or f"config-{now}", name=name, created_at=now, config=config,
        )
        async with self._db.transaction() as tx:
            await tx.execute("DELETE FROM user_configuration_presets WHERE name = ?", (name,))
            await tx.execute(
                "INSERT OR REPLACE INTO user_configuration_presets (id, name, created_at, config)"
                " VALUES (?, ?, ?, ?)",
                (preset.id, preset.name, preset.created_at, json.dumps(preset.config)),
            )
        return preset

    async def remove_preset(self, name: str) -> int:
        """Remove presets by name. Returns the number of rows removed."""
        async with self._db.transaction() as tx:
            cursor = await tx.execute(
                "DELETE FROM user_configuration_presets WHERE name = ?", (name,)
            )
            return cursor.rowcount

    # -- Row helpers --

    @staticmethod
    async def _insert_conversation(tx: Transaction, conv: Conversation) -> None:
        await tx.execute(
            "INSERT INTO conversations (id, last_modified, curr_node, name) VALUES (?, ?, ?, ?)",
            (conv.id, conv.last_modified, conv.curr_node, conv.name),
        )

    @staticmethod
    async def _insert_message(tx: Transaction, msg: Message) -> None:
        await tx.execute(_INSERT_MESSAGE_SQL, TreeService._message_params(msg))

    @staticmethod
    def _message_params(msg: Message) -> tuple:
        """Column values for a message row, in _INSERT_MESSAGE_SQL order."""
        if msg.content is None:
            raise StoreError(f"Message {msg.id} has no content and cannot be stored")
        return (
            msg.id,
            msg.conv_id,
            msg.type,
            msg.timestamp,
            msg.model,
            msg.role,
            msg.content,
            msg.reasoning_content,
            # An empty report is stored as NULL so it round-trips as None
            dump_json_or_none(msg.timings.model_dump(exclude_none=True) or None if msg.timings else None),
            dump_json_or_none(
                [e.model_dump(by_alias=True) for e in msg.extra] if msg.extra is not None else None
            ),
            msg.parent,
            json.dumps(msg.children),
        )

    @staticmethod
    def _message_from_row(row: Any) -> Message:
        """Convert a message row to a Message."""
        return Message(
            id=row["id"],
            conv_id=row["conv_id"],
            type=row["type"],
            timestamp=row["timestamp"],
            model=row["model"],
            role=row["role"],
            content=row["content"],
            reasoning_content=row["reasoning_content"],
            timings=parse_json_field(row["timings"]),
            extra=parse_json_or_none(row["extra"]),
            parent=row["parent"],
            children=parse_json_or_none(row["children"]) or [],
        )

    @staticmethod
    def _conversation_from_row(row: Any) -> Conversation:
        return Conversation(
            id=row["id"],
            last_modified=row["last_modified"],
            curr_node=row["curr_node"],
            name=row["name"],
        )

    @staticmethod
    def _preset_from_row(row: Any) -> ConfigurationPreset:
        return ConfigurationPreset(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            config=parse_json_field(row["config"]) or {},
        )


def message_rows(messages: Sequence[Message]) -> list[tuple]:
    """Column tuples for bulk upserts (import, migration)."""
    return [TreeService._message_params(m) for m in messages]


class StoreError(Exception):
    """Unexpected storage condition (id collision, unstorable record)."""


class NotFoundError(Exception):
    """A referenced conversation or message does not exist."""


class ConversationNotFoundError(NotFoundError):
    def __init__(self, conv_id: str) -> None:
        self.conv_id = conv_id
        super().__init__(f"Conversation not found: {conv_id}")


class MessageNotFoundError(NotFoundError):
    def __init__(self, msg_id: int, conv_id: str | None = None) -> None:
        self.msg_id = msg_id
        self.conv_id = conv_id
        where = f" in conversation {conv_id}" if conv_id else ""
        super().__init__(f"Message not found: {msg_id}{where}")
