"""Export service: table-keyed JSON snapshots of the store."""

import logging

from canopy.db.connection import Database
from canopy.models import SnapshotTable
from canopy.trees.service import ConversationNotFoundError, TreeService

logger = logging.getLogger(__name__)


class ExportService:
    """Builds snapshots from the stored tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def export_snapshot(self, conv_id: str | None = None) -> list[SnapshotTable]:
        """Dump every table, or only one conversation and its messages.

        A conversation-scoped snapshot still lists the presets table, empty.

        Rows use the snapshot (camelCase) field names and can be fed back to
        ImportService.import_snapshot unchanged.
        """
        async with self._db.transaction() as tx:
            if conv_id is None:
                conv_rows = await tx.fetchall("SELECT * FROM conversations ORDER BY id")
                msg_rows = await tx.fetchall("SELECT * FROM messages ORDER BY id")
                preset_rows = await tx.fetchall(
                    "SELECT * FROM user_configuration_presets ORDER BY id"
                )
            else:
                conv_rows = await tx.fetchall(
                    "SELECT * FROM conversations WHERE id = ?", (conv_id,)
                )
                if not conv_rows:
                    raise ConversationNotFoundError(conv_id)
                msg_rows = await tx.fetchall(
                    "SELECT * FROM messages WHERE conv_id = ? ORDER BY id", (conv_id,)
                )
                preset_rows = []

        snapshot = [
            SnapshotTable(
                table="conversations",
                rows=[
                    TreeService._conversation_from_row(r).model_dump(by_alias=True, mode="json")
                    for r in conv_rows
                ],
            ),
            SnapshotTable(
                table="messages",
                rows=[
                    TreeService._message_from_row(r).model_dump(
                        by_alias=True, mode="json", exclude_none=True
                    )
                    for r in msg_rows
                ],
            ),
            SnapshotTable(
                table="userConfigurationPresets",
                rows=[
                    TreeService._preset_from_row(r).model_dump(by_alias=True, mode="json")
                    for r in preset_rows
                ],
            ),
        ]

        for entry in snapshot:
            logger.debug("Export - fetched %d rows from table %r", len(entry.rows), entry.table)
        return snapshot

    async def export_json(self, conv_id: str | None = None) -> list[dict]:
        """Snapshot as plain JSON-ready dicts."""
        return [entry.model_dump() for entry in await self.export_snapshot(conv_id)]
