"""ImportService: restores table-keyed JSON snapshots into the store.

Rows are upserted by primary key, so importing a snapshot produced by
ExportService over the same store leaves every row unchanged.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from canopy.db.connection import Database
from canopy.db.schema import SNAPSHOT_TABLES
from canopy.importer.schemas import ImportedTable, ImportResponse
from canopy.models import ConfigurationPreset, Conversation, Message, SnapshotTable
from canopy.trees.service import StoreError, message_rows
from canopy.utils.ids import IdAllocator, default_allocator

logger = logging.getLogger(__name__)

_UPSERT_CONVERSATION_SQL = (
    "INSERT OR REPLACE INTO conversations (id, last_modified, curr_node, name)"
    " VALUES (?, ?, ?, ?)"
)
_UPSERT_MESSAGE_SQL = """
    INSERT OR REPLACE INTO messages
        (id, conv_id, type, timestamp, model, role, content,
         reasoning_content, timings, extra, parent, children)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
_UPSERT_PRESET_SQL = (
    "INSERT OR REPLACE INTO user_configuration_presets (id, name, created_at, config)"
    " VALUES (?, ?, ?, ?)"
)


class ImportService:
    def __init__(self, db: Database, *, ids: IdAllocator | None = None) -> None:
        self._db = db
        self._ids = ids or default_allocator

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def import_json(self, content: bytes) -> ImportResponse:
        """Import an uploaded snapshot file."""
        data = self._load_json(content)
        if not isinstance(data, list):
            raise ImportFormatError("Snapshot must be a JSON array of {table, rows} entries")
        return await self.import_snapshot(data)

    async def import_snapshot(
        self, data: list[SnapshotTable] | list[dict[str, Any]],
    ) -> ImportResponse:
        """Upsert every row of every recognized table in one transaction.

        Unknown tables are skipped with a warning. Invalid rows reject the
        whole snapshot before anything is written.
        """
        try:
            entries = [SnapshotTable.model_validate(e) for e in data]
        except ValidationError as e:
            raise ImportFormatError(f"Invalid snapshot entry: {e}") from e

        conversations: list[Conversation] = []
        messages: list[Message] = []
        presets: list[ConfigurationPreset] = []
        imported: list[ImportedTable] = []
        skipped: list[str] = []

        for entry in entries:
            if entry.table not in SNAPSHOT_TABLES:
                logger.warning("Skipping unknown table %r during import", entry.table)
                skipped.append(entry.table)
                continue
            try:
                if entry.table == "conversations":
                    conversations.extend(Conversation.model_validate(r) for r in entry.rows)
                elif entry.table == "messages":
                    messages.extend(Message.model_validate(r) for r in entry.rows)
                else:
                    presets.extend(ConfigurationPreset.model_validate(r) for r in entry.rows)
            except ValidationError as e:
                raise ImportFormatError(f"Invalid row in table {entry.table!r}: {e}") from e
            imported.append(ImportedTable(table=entry.table, rows=len(entry.rows)))

        try:
            msg_params = message_rows(messages)
        except StoreError as e:
            raise ImportFormatError(str(e)) from e

        touched: list[str] = []
        for conv_id in [c.id for c in conversations] + [m.conv_id for m in messages]:
            if conv_id not in touched:
                touched.append(conv_id)

        async with self._db.transaction() as tx:
            if conversations:
                await tx.executemany(
                    _UPSERT_CONVERSATION_SQL,
                    [(c.id, c.last_modified, c.curr_node, c.name) for c in conversations],
                )
            if msg_params:
                await tx.executemany(_UPSERT_MESSAGE_SQL, msg_params)
            if presets:
                await tx.executemany(
                    _UPSERT_PRESET_SQL,
                    [(p.id, p.name, p.created_at, json.dumps(p.config)) for p in presets],
                )
            for conv_id in touched:
                tx.touch(conv_id)

        for msg in messages:
            self._ids.observe(msg.id)

        logger.info(
            "Imported %d conversation(s), %d message(s), %d preset(s)",
            len(conversations), len(messages), len(presets),
        )
        return ImportResponse(tables=imported, skipped_tables=skipped, conversation_ids=touched)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _load_json(content: bytes) -> Any:
        """Parse raw bytes as JSON."""
        try:
            return json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ImportFormatError(f"Invalid JSON: {e}") from e


class ImportFormatError(Exception):
    """Raised when an uploaded snapshot cannot be parsed or validated."""
