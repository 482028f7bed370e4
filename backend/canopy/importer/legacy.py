"""One-time migration from the legacy flat conversation format.

Legacy conversations were stored one per key (``conv-<timestamp>``) as
``{id, lastModified, messages: [{id, role, content, timings?}, ...]}`` with
messages in chronological order and no branching. Migration rebuilds each
one as a single-branch tree under a synthesized root node.
"""

import json
import logging
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from canopy.db.connection import Database, TransactionError
from canopy.models import ROOT_PARENT_ID, Conversation, Message, Role, TimingReport
from canopy.trees.service import TreeService
from canopy.utils.ids import IdAllocator, default_allocator

logger = logging.getLogger(__name__)

MIGRATION_FLAG_KEY = "migrated_legacy"
LEGACY_KEY_PREFIX = "conv-"


class LegacyMessage(BaseModel):
    id: int
    role: Role
    content: str
    timings: TimingReport | None = None


class LegacyConversation(BaseModel):
    id: str
    last_modified: int = Field(alias="lastModified")
    messages: list[LegacyMessage]


class ParseWarning(Warning):
    """A legacy record could not be parsed. It is logged and skipped."""


def load_legacy_dir(path: str | Path) -> dict[str, str]:
    """Read ``conv-*.json`` files from a directory into a key -> raw JSON mapping."""
    directory = Path(path)
    if not directory.is_dir():
        return {}
    return {
        f.stem: f.read_text(encoding="utf-8")
        for f in sorted(directory.glob(f"{LEGACY_KEY_PREFIX}*.json"))
    }


def parse_legacy_record(key: str, raw: str) -> LegacyConversation:
    """Parse one legacy record. Raises ParseWarning if it is unusable."""
    try:
        return LegacyConversation.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise ParseWarning(f"Failed to parse legacy item with key {key}: {e}") from e


def legacy_to_tree(conv: LegacyConversation) -> tuple[Conversation, list[Message]]:
    """Rebuild a flat legacy conversation as root -> m0 -> m1 -> ... -> mN."""
    msgs = conv.messages
    first, last = msgs[0], msgs[-1]
    root_id = first.id - 2

    root = Message(
        id=root_id,
        conv_id=conv.id,
        type="root",
        timestamp=root_id,
        role="system",
        content="",
        parent=ROOT_PARENT_ID,
        children=[first.id],
    )
    tree = [root]
    for i, msg in enumerate(msgs):
        tree.append(Message(
            id=msg.id,
            conv_id=conv.id,
            type="text",
            timestamp=msg.id,
            role=msg.role,
            content=msg.content,
            timings=msg.timings,
            parent=root_id if i == 0 else msgs[i - 1].id,
            children=[] if i == len(msgs) - 1 else [msgs[i + 1].id],
        ))

    conversation = Conversation(
        id=conv.id,
        last_modified=conv.last_modified,
        curr_node=last.id,
        name=first.content or "(no messages)",
    )
    return conversation, tree


class LegacyMigrator:
    """Migrates legacy records into the tree tables at most once."""

    def __init__(
        self,
        db: Database,
        source: Mapping[str, str] | None = None,
        *,
        ids: IdAllocator | None = None,
    ) -> None:
        self._db = db
        self._source = source or {}
        self._ids = ids or default_allocator

    async def is_migrated(self) -> bool:
        row = await self._db.fetchone("SELECT value FROM meta WHERE key = ?", (MIGRATION_FLAG_KEY,))
        return row is not None

    async def migrate(self) -> int:
        """Run the migration if it has not run yet. Returns the number of conversations migrated."""
        if await self.is_migrated():
            return 0

        parsed: list[LegacyConversation] = []
        for key, raw in self._source.items():
            if not key.startswith(LEGACY_KEY_PREFIX):
                continue
            try:
                parsed.append(parse_legacy_record(key, raw))
            except ParseWarning as w:
                logger.warning("%s", w)

        if not parsed:
            logger.info("No legacy conversations found for migration.")
            return 0

        logger.info("Starting migration of %d legacy conversation(s)...", len(parsed))
        migrated = 0
        try:
            async with self._db.transaction() as tx:
                # Another caller may have finished the migration while this one parsed
                flag = await tx.fetchone(
                    "SELECT value FROM meta WHERE key = ?", (MIGRATION_FLAG_KEY,)
                )
                if flag is not None:
                    logger.debug("Legacy migration already completed; skipping")
                    return 0
                for conv in parsed:
                    if len(conv.messages) < 2:
                        logger.info(
                            "Skipping conversation %s with fewer than 2 messages.", conv.id
                        )
                        continue
                    conversation, tree = legacy_to_tree(conv)
                    await TreeService._insert_conversation(tx, conversation)
                    for msg in tree:
                        await TreeService._insert_message(tx, msg)
                        self._ids.observe(msg.id)
                    tx.touch(conversation.id)
                    migrated += 1
                    logger.info(
                        "Migrated conversation %s with %d messages.", conv.id, len(conv.messages)
                    )
                await tx.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                    (MIGRATION_FLAG_KEY, "1"),
                )
        except TransactionError:
            logger.exception("Error during legacy migration transaction")
            return 0

        logger.info("Migration complete. Migrated %d legacy conversation(s).", migrated)
        return migrated
