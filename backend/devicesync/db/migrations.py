"""Schema migration runner shared by device files and the user registry"""
import logging
from typing import List, Tuple

import aiosqlite

from ..core.timeutil import utcnow

logger = logging.getLogger(__name__)

Migration = Tuple[int, str, str]

# Migration format: (version, description, up_sql)
DEVICE_MIGRATIONS: List[Migration] = [
    (
        1,
        "Initial schema",
        """-- This migration is handled by device_schema.create_tables()""",
    ),
    (
        2,
        "Add device_name and device_type to device_info",
        """ALTER TABLE device_info ADD COLUMN device_name TEXT;
ALTER TABLE device_info ADD COLUMN device_type TEXT""",
    ),
    (
        3,
        "Add updated_at to device_info for last-write-wins sync",
        """ALTER TABLE device_info ADD COLUMN updated_at DATETIME;
UPDATE device_info SET updated_at = created_at WHERE updated_at IS NULL""",
    ),
]

# Statement errors that mean the change is already present
_ALREADY_APPLIED = (
    "duplicate column name",
    "table already exists",
    "index already exists",
    "column already exists",
)


async def get_current_version(connection: aiosqlite.Connection) -> int:
    """Get current schema version"""
    try:
        cursor = await connection.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
    except aiosqlite.OperationalError:
        # Table doesn't exist yet
        return 0
    return row[0] if row and row[0] else 0


async def apply_migration(connection: aiosqlite.Connection, version: int,
                          description: str, up_sql: str):
    """Apply a single migration"""
    if up_sql.strip() and not up_sql.strip().startswith("--"):
        statements = [stmt.strip() for stmt in up_sql.split(";") if stmt.strip()]
        for statement in statements:
            try:
                await connection.execute(statement)
            except aiosqlite.OperationalError as e:
                if any(phrase in str(e).lower() for phrase in _ALREADY_APPLIED):
                    logger.debug(f"Migration {version}: skipping statement (already exists): {statement}")
                    continue
                logger.error(f"Migration {version} failed on statement: {statement}: {e}")
                raise

    await connection.execute(
        "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
        (version, utcnow().isoformat(), description)
    )
    await connection.commit()
    logger.debug(f"Applied migration {version}: {description}")


async def run_migrations(connection: aiosqlite.Connection,
                         migrations: List[Migration] = DEVICE_MIGRATIONS) -> int:
    """Run all pending migrations and return the resulting version"""
    current_version = await get_current_version(connection)

    for version, description, up_sql in migrations:
        if version > current_version:
            await apply_migration(connection, version, description, up_sql)

    final_version = await get_current_version(connection)
    if final_version > current_version:
        logger.debug(f"Schema migrated from version {current_version} to {final_version}")
    return final_version
