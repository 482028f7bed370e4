"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency."""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    last_modified INTEGER NOT NULL,
    curr_node INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_conversations_last_modified ON conversations(last_modified);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY,
    conv_id TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    timestamp INTEGER NOT NULL,
    model TEXT,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    reasoning_content TEXT,
    timings TEXT,
    extra TEXT,
    parent INTEGER NOT NULL,
    children TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_messages_conv_id ON messages(conv_id);
CREATE INDEX IF NOT EXISTS idx_messages_conv_id_id ON messages(conv_id, id);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);

CREATE TABLE IF NOT EXISTS user_configuration_presets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    config TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_presets_name ON user_configuration_presets(name);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Snapshot table name -> SQL table name. Snapshot names are the wire format.
SNAPSHOT_TABLES: dict[str, str] = {
    "conversations": "conversations",
    "messages": "messages",
    "userConfigurationPresets": "user_configuration_presets",
}
