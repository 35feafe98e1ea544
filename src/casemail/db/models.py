"""SQLite schema and initialization for the casemail key-value stores.

Every logical store (raw, matched, one per category, pipeline state) is a
namespace inside a single table:
- kv_records: (namespace, key) -> opaque serialized value

Usage:
    from casemail.db.models import init_database

    await init_database("data/casemail.db")
"""

import stat
from pathlib import Path

import aiosqlite

from casemail.core.errors import StorageError
from casemail.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv_records (
    namespace TEXT NOT NULL,               -- Store name (e.g. RAW_DATA_HEADERS)
    key TEXT NOT NULL,                     -- Derived record key
    value TEXT NOT NULL,                   -- Serialized record (JSON for message records)
    updated_at DATETIME NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE TABLE IF NOT EXISTS schema_meta (
    version INTEGER NOT NULL
);
"""

REQUIRED_TABLES = ("kv_records", "schema_meta")


async def init_database(db_path: str | Path) -> None:
    """Create the database file, enable WAL mode, and create tables.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        StorageError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)

            cursor = await db.execute("SELECT COUNT(*) FROM schema_meta")
            if (await cursor.fetchone())[0] == 0:
                await db.execute("INSERT INTO schema_meta (version) VALUES (?)", (SCHEMA_VERSION,))
            await db.commit()

        # Message bodies are personal data: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info("database_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise StorageError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
