"""Schema of a single device identity file"""

import aiosqlite

# One row per file: the identity of exactly one device
DEVICE_INFO_TABLE = """
CREATE TABLE IF NOT EXISTS device_info (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    device_id TEXT NOT NULL,
    handle TEXT,
    guid TEXT,
    phone TEXT,
    created_at DATETIME NOT NULL,
    last_verified_at DATETIME,
    updated_at DATETIME,
    device_name TEXT,
    device_type TEXT
)
"""

# Append-only status log; only the newest row is read by recognition
SYNC_STATE_TABLE = """
CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    last_sync DATETIME NOT NULL,
    status TEXT NOT NULL
)
"""

# Schema version table for migrations
SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at DATETIME NOT NULL,
    description TEXT
)
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sync_state_last_sync ON sync_state(last_sync DESC)",
]

# All tables in order of creation
ALL_TABLES = [
    SCHEMA_VERSION_TABLE,
    DEVICE_INFO_TABLE,
    SYNC_STATE_TABLE,
]


async def create_tables(connection: aiosqlite.Connection):
    """Create all tables and indexes inside an open device file"""
    for table_sql in ALL_TABLES:
        await connection.execute(table_sql)

    for index_sql in INDEXES:
        await connection.execute(index_sql)

    await connection.commit()
